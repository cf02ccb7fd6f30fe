from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

import requests
import urllib3
from urllib3.util import SKIP_HEADER

from sniguard.audit.ledger import LogEntry, utc_now
from sniguard.context import ProxyContext
from sniguard.net.tunnel import UpstreamConnectFailure, UpstreamProtocolError, bridge, open_upstream

logger = logging.getLogger(__name__)

CONNECT_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"
BAD_REQUEST_BODY = "Bad Request - Could not determine target hostname"
PROXY_ERROR_BODY = "Proxy error"

# proxy-only headers, plus the ones requests recomputes from the URL and body
STRIPPED_REQUEST_HEADERS = frozenset(
    {"proxy-connection", "proxy-authorization", "host", "content-length", "transfer-encoding"}
)
# framing is redone towards the client, the body is relayed undecoded
STRIPPED_RESPONSE_HEADERS = frozenset({"transfer-encoding", "connection", "keep-alive", "proxy-connection"})
# urllib3 fills these in unless told to skip them
SKIPPABLE_DEFAULT_HEADERS = ("User-Agent", "Accept-Encoding")

LENIENT_ABSOLUTE_URI = re.compile(r"^(https?)://([^/\s]+)(.*)$", re.IGNORECASE)


class UnresolvedDestination(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class Destination:
    scheme: str
    hostname: str
    port: int
    path: str

    @property
    def url(self) -> str:
        host = f"[{self.hostname}]" if ":" in self.hostname else self.hostname
        return f"{self.scheme}://{host}:{self.port}{self.path}"


def _default_port(scheme: str) -> int:
    return 443 if scheme.lower() == "https" else 80


def split_host_port(hostport: str, default_port: int) -> tuple[str, int]:
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            return "", default_port
        host, rest = hostport[1:end], hostport[end + 1 :]
        port_str = rest[1:] if rest.startswith(":") else ""
    else:
        host, _, port_str = hostport.partition(":")
    try:
        port = int(port_str) if port_str else default_port
    except ValueError:
        port = default_port
    if not 0 < port < 65536:
        port = default_port
    return host, port


def parse_connect_target(target: str) -> tuple[str, int]:
    return split_host_port(target.strip(), 443)


def resolve_destination(target: str, headers) -> Destination:
    """Work out where a plain proxied request should go.

    Tries an absolute URI first, then the Host header for relative targets,
    then a lenient ``scheme://host[:port]path`` match for absolute targets the
    URL parser rejects.
    """
    absolute = target.lower().startswith(("http://", "https://"))
    if absolute:
        try:
            parts = urlsplit(target)
            hostname, port = parts.hostname, parts.port
        except ValueError:
            hostname, port = None, None
        if hostname:
            path = parts.path or "/"
            if parts.query:
                path = f"{path}?{parts.query}"
            return Destination(parts.scheme.lower(), hostname, port or _default_port(parts.scheme), path)
    else:
        host_header = headers.get("Host") if headers is not None else None
        if host_header:
            hostname, port = split_host_port(host_header.strip(), 80)
            if hostname:
                return Destination("http", hostname, port, target or "/")

    lenient = LENIENT_ABSOLUTE_URI.match(target)
    if lenient is None:
        raise UnresolvedDestination(f"no hostname in request target {target!r} and no usable Host header")

    scheme = lenient.group(1).lower()
    hostname, port = split_host_port(lenient.group(2), _default_port(scheme))
    if not hostname:
        raise UnresolvedDestination(f"empty hostname in request target {target!r}")
    return Destination(scheme, hostname, port, lenient.group(3) or "/")


def outbound_headers(headers) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in STRIPPED_REQUEST_HEADERS:
            continue
        out[key] = f"{out[key]}, {value}" if key in out else value
    return out


def forward_upstream(
    session: requests.Session,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None,
    connect_timeout: float,
) -> requests.Response:
    # nothing beyond the client's own headers goes upstream
    session.headers.clear()
    sent = {key.lower() for key in headers}
    headers = dict(headers)
    for name in SKIPPABLE_DEFAULT_HEADERS:
        if name.lower() not in sent:
            headers[name] = SKIP_HEADER
    return session.request(
        method,
        url,
        data=body,
        headers=headers,
        timeout=(connect_timeout, None),
        stream=True,
        allow_redirects=False,
    )


class ForwardProxyHandler(BaseHTTPRequestHandler):
    server: "ForwardProxyServer"
    protocol_version = "HTTP/1.1"
    server_version = "sniguard"

    def log_message(self, format: str, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def _write_text(self, code: int, text: str, close: bool = False) -> None:
        body = text.encode("utf-8")
        self.send_response(code)
        if close:
            self.send_header("Connection", "close")
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _record(self, method: str, hostname: str, path: str, protocol: str) -> None:
        entry = LogEntry(
            timestamp=utc_now(),
            method=method,
            hostname=hostname,
            path=path,
            protocol=protocol,
            user_agent=self.headers.get("User-Agent"),
        )
        self.server.context.traffic.record(entry)
        logger.info("%s %s %s%s", protocol, method, hostname, path)

    def _read_chunked_body(self) -> bytes:
        chunks: list[bytes] = []
        while True:
            size_line = self.rfile.readline(65537)
            size = int(size_line.split(b";", 1)[0].strip() or b"0", 16)
            if size == 0:
                while self.rfile.readline(65537) not in (b"\r\n", b"\n", b""):
                    pass
                break
            chunks.append(self.rfile.read(size))
            self.rfile.readline(65537)
        return b"".join(chunks)

    def _read_body(self) -> bytes | None:
        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            return self._read_chunked_body()
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length > 0 else None

    def _relay_response(self, response: requests.Response) -> None:
        status = response.status_code
        self.send_response_only(status, response.reason)
        self.log_request(status)
        has_length = False
        for key, value in response.raw.headers.items():
            lowered = key.lower()
            if lowered in STRIPPED_RESPONSE_HEADERS:
                continue
            if lowered == "content-length":
                has_length = True
            self.send_header(key, value)
        bodyless = self.command == "HEAD" or status in (204, 304) or 100 <= status < 200
        if not has_length and not bodyless:
            self.send_header("Connection", "close")
        self.end_headers()
        if bodyless:
            return
        for chunk in response.raw.stream(self.server.context.config.read_size, decode_content=False):
            self.wfile.write(chunk)

    def _handle_plain(self) -> None:
        context = self.server.context
        try:
            destination = resolve_destination(self.path, self.headers)
        except UnresolvedDestination as exc:
            logger.warning("Could not determine hostname for request %r: %s", self.path, exc)
            self._write_text(400, BAD_REQUEST_BODY, close=True)
            return

        self._record(self.command, destination.hostname, destination.path, "HTTP")

        try:
            body = self._read_body()
        except ValueError as exc:
            logger.warning("Unreadable request body for %s: %s", destination.hostname, exc)
            self._write_text(400, "Bad Request - Unreadable request body", close=True)
            return

        session = requests.Session()
        session.trust_env = False
        try:
            try:
                response = forward_upstream(
                    session,
                    self.command,
                    destination.url,
                    outbound_headers(self.headers),
                    body,
                    context.config.connect_timeout,
                )
            except requests.RequestException as exc:
                logger.error("HTTP proxy error for %s: %s", destination.hostname, exc)
                self._write_text(500, PROXY_ERROR_BODY, close=True)
                return

            try:
                self._relay_response(response)
            except (urllib3.exceptions.HTTPError, requests.RequestException) as exc:
                error = UpstreamProtocolError(f"upstream response from {destination.hostname} failed: {exc}")
                logger.error("HTTP proxy error for %s: %s", destination.hostname, error)
                self.close_connection = True
            except OSError as exc:
                logger.debug("client went away while relaying %s: %s", destination.hostname, exc)
                self.close_connection = True
            finally:
                response.close()
        finally:
            session.close()

    def __getattr__(self, name: str):
        # every method except CONNECT is relayed as a plain request
        if name.startswith("do_"):
            return self._handle_plain
        raise AttributeError(name)

    def do_CONNECT(self) -> None:
        context = self.server.context
        hostname, port = parse_connect_target(self.path)
        if not hostname:
            logger.warning("Could not determine CONNECT target from %r", self.path)
            self._write_text(400, BAD_REQUEST_BODY, close=True)
            return

        try:
            upstream = open_upstream(hostname, port, timeout=context.config.connect_timeout)
        except UpstreamConnectFailure as exc:
            logger.error("HTTPS proxy error for %s: %s", hostname, exc)
            self._write_text(500, PROXY_ERROR_BODY, close=True)
            return

        self.close_connection = True
        try:
            self.wfile.write(CONNECT_ESTABLISHED)
        except OSError as exc:
            logger.debug("Client socket error before tunnel to %s: %s", hostname, exc)
            upstream.close()
            return
        self.log_request(200)
        self._record("CONNECT", hostname, "/", "HTTPS")

        # rfile may already hold the start of the client's handshake
        bridge(self.connection, upstream, client_reader=self.rfile.read1, chunk_size=context.config.read_size)


class ForwardProxyServer(ThreadingHTTPServer):
    allow_reuse_address = True

    def __init__(self, server_address: tuple[str, int], context: ProxyContext):
        self.context = context
        super().__init__(server_address, ForwardProxyHandler)
