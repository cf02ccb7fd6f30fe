from __future__ import annotations

import socket
import socketserver
import struct
import threading

import pytest

from sniguard.audit.ledger import TrafficLog
from sniguard.config import ProxyConfig
from sniguard.context import ProxyContext
from sniguard.policy.blocklist import BlockList


def build_client_hello(
    hostname: str | None,
    extensions_before: list[tuple[int, bytes]] | None = None,
    extensions_after: list[tuple[int, bytes]] | None = None,
    session_id: bytes = b"\x11" * 32,
) -> bytes:
    extensions = b""
    for ext_type, payload in extensions_before or []:
        extensions += struct.pack("!HH", ext_type, len(payload)) + payload
    if hostname is not None:
        name = hostname.encode("utf-8")
        server_name = struct.pack("!HBH", len(name) + 3, 0, len(name)) + name
        extensions += struct.pack("!HH", 0x0000, len(server_name)) + server_name
    for ext_type, payload in extensions_after or []:
        extensions += struct.pack("!HH", ext_type, len(payload)) + payload

    body = (
        b"\x03\x03"
        + b"\x42" * 32
        + bytes([len(session_id)])
        + session_id
        + struct.pack("!H", 4)
        + b"\x13\x01\x13\x02"
        + b"\x01\x00"
        + struct.pack("!H", len(extensions))
        + extensions
    )
    handshake = b"\x01" + len(body).to_bytes(3, "big") + body
    return b"\x16\x03\x01" + struct.pack("!H", len(handshake)) + handshake


def recv_exactly(sock: socket.socket, count: int) -> bytes:
    data = b""
    while len(data) < count:
        chunk = sock.recv(count - len(data))
        if not chunk:
            break
        data += chunk
    return data


def recv_until_close(sock: socket.socket) -> bytes:
    data = b""
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            return data
        data += chunk


def closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


class _EchoHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        while True:
            try:
                data = self.request.recv(65536)
            except OSError:
                return
            if not data:
                return
            with self.server.lock:
                self.server.received.append(data)
            self.request.sendall(data)


class EchoServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self):
        self.received: list[bytes] = []
        self.lock = threading.Lock()
        super().__init__(("127.0.0.1", 0), _EchoHandler)

    @property
    def port(self) -> int:
        return self.server_address[1]

    def received_bytes(self) -> bytes:
        with self.lock:
            return b"".join(self.received)


@pytest.fixture
def echo_server():
    server = EchoServer()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def make_context(tmp_path):
    def _make(blocked: list[str] | None = None, **overrides) -> ProxyContext:
        config = ProxyConfig(
            listen_host="127.0.0.1",
            http_port=0,
            sni_port=0,
            audit_log=str(tmp_path / "browser_traffic.log"),
            export_path=str(tmp_path / "traffic_export.json"),
            connect_timeout=5.0,
            blocklist_path="",
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        return ProxyContext(
            config=config.validate(),
            blocklist=BlockList.from_domains(blocked or []),
            traffic=TrafficLog(config.audit_log),
        )

    return _make


def serve_in_thread(server: socketserver.BaseServer) -> threading.Thread:
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread
