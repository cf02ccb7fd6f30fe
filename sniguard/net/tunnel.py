from __future__ import annotations

import logging
import socket
import socketserver
import threading
from typing import Callable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536


class TunnelError(OSError):
    pass


class UpstreamConnectFailure(TunnelError):
    pass


class UpstreamProtocolError(TunnelError):
    pass


class PeerDisconnect(TunnelError):
    pass


class ThreadingTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True


def open_upstream(host: str, port: int, timeout: float | None = None) -> socket.socket:
    try:
        upstream = socket.create_connection((host, port), timeout=timeout)
    except OSError as exc:
        raise UpstreamConnectFailure(f"connect to {host}:{port} failed: {exc}") from exc
    # The timeout bounds the connect only; an established tunnel may idle.
    upstream.settimeout(None)
    return upstream


def read_first_chunk(sock: socket.socket, size: int = CHUNK_SIZE) -> bytes:
    try:
        data = sock.recv(size)
    except OSError as exc:
        raise PeerDisconnect(f"client read failed: {exc}") from exc
    if not data:
        raise PeerDisconnect("client closed before sending data")
    return data


def _shutdown(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # already closed or never connected
        return


def bridge(
    client: socket.socket,
    upstream: socket.socket,
    client_reader: Callable[[int], bytes] | None = None,
    chunk_size: int = CHUNK_SIZE,
) -> tuple[int, int]:
    """Copy bytes both ways until either side closes, then close both.

    ``client_reader`` replaces ``client.recv`` when the caller holds a buffered
    reader over the client socket, so bytes already buffered there go upstream
    first. Each pump blocks in ``sendall`` until the peer accepts the chunk,
    which keeps at most one chunk in flight per direction.

    Returns the byte counts sent upstream and downstream.
    """
    read_client = client_reader or client.recv
    sent = {"upstream": 0, "downstream": 0}

    def pump(read: Callable[[int], bytes], dst: socket.socket, direction: str) -> None:
        try:
            while True:
                data = read(chunk_size)
                if not data:
                    break
                dst.sendall(data)
                sent[direction] += len(data)
        except (OSError, ValueError) as exc:
            logger.debug("%s pump stopped: %s", direction, exc)
        finally:
            _shutdown(client)
            _shutdown(upstream)

    downstream = threading.Thread(target=pump, args=(upstream.recv, client, "downstream"), daemon=True)
    downstream.start()
    pump(read_client, upstream, "upstream")
    downstream.join()
    upstream.close()
    return sent["upstream"], sent["downstream"]
