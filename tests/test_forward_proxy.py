import json
import socket
from http.client import HTTPMessage
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from conftest import closed_port, recv_exactly, recv_until_close, serve_in_thread
from sniguard.proxy.forward_proxy import (
    CONNECT_ESTABLISHED,
    ForwardProxyServer,
    UnresolvedDestination,
    outbound_headers,
    parse_connect_target,
    resolve_destination,
)


class _UpstreamHandler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        _ = (format, args)

    def _reply(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = json.dumps(
            {
                "method": self.command,
                "path": self.path,
                "headers": {k.lower(): v for k, v in self.headers.items()},
                "body": self.rfile.read(length).decode("utf-8") if length else "",
            }
        ).encode("utf-8")
        self.send_response(201 if self.command == "POST" else 200)
        self.send_header("Content-Type", "application/json")
        self.send_header("X-Upstream", "yes")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    do_GET = do_POST = do_PROPFIND = _reply


@pytest.fixture
def upstream():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _UpstreamHandler)
    serve_in_thread(server)
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def proxy(make_context):
    server = ForwardProxyServer(("127.0.0.1", 0), make_context())
    serve_in_thread(server)
    yield server
    server.shutdown()
    server.server_close()


def _session(proxy) -> requests.Session:
    session = requests.Session()
    session.trust_env = False
    host, port = proxy.server_address[:2]
    session.proxies = {"http": f"http://{host}:{port}"}
    return session


def _headers(**values) -> HTTPMessage:
    msg = HTTPMessage()
    for key, value in values.items():
        msg[key.replace("_", "-")] = value
    return msg


@pytest.mark.parametrize(
    "target,headers,expected",
    [
        ("http://example.com/a?b=1", {}, ("http", "example.com", 80, "/a?b=1")),
        ("https://example.com/secure", {}, ("https", "example.com", 443, "/secure")),
        ("http://example.com:8080", {}, ("http", "example.com", 8080, "/")),
        ("/relative/path", {"Host": "example.org:8081"}, ("http", "example.org", 8081, "/relative/path")),
        ("/relative", {"Host": "example.org"}, ("http", "example.org", 80, "/relative")),
        ("/relative", {"Host": "example.org:abc"}, ("http", "example.org", 80, "/relative")),
        ("http://example.net:notaport/x", {}, ("http", "example.net", 80, "/x")),
        ("HTTPS://Example.net/y", {}, ("https", "example.net", 443, "/y")),
    ],
)
def test_resolve_destination(target, headers, expected):
    dest = resolve_destination(target, _headers(**headers))
    assert (dest.scheme, dest.hostname, dest.port, dest.path) == expected


def test_resolve_destination_without_host_fails():
    with pytest.raises(UnresolvedDestination):
        resolve_destination("/no-host", _headers())
    with pytest.raises(UnresolvedDestination):
        resolve_destination("http:///missing", _headers(Host="ignored.example"))


def test_parse_connect_target_defaults():
    assert parse_connect_target("example.com:8443") == ("example.com", 8443)
    assert parse_connect_target("example.com") == ("example.com", 443)
    assert parse_connect_target("example.com:https") == ("example.com", 443)
    assert parse_connect_target("[::1]:9443") == ("::1", 9443)


def test_outbound_headers_strip_proxy_headers_and_fold_duplicates():
    msg = _headers(Host="example.com", Proxy_Connection="keep-alive", Accept="text/html")
    msg["X-Trace"] = "a"
    msg["X-Trace"] = "b"
    out = outbound_headers(msg)
    assert "Proxy-Connection" not in out
    assert "Host" not in out
    assert out["Accept"] == "text/html"
    assert out["X-Trace"] == "a, b"
    assert list(out) == ["Accept", "X-Trace"]


def test_plain_request_is_relayed_and_logged(proxy, upstream):
    host, port = upstream.server_address[:2]
    with _session(proxy) as session:
        resp = session.get(
            f"http://{host}:{port}/hello?x=1",
            headers={"User-Agent": "pytest-agent", "Proxy-Connection": "keep-alive", "X-Custom": "1"},
        )
    assert resp.status_code == 200
    assert resp.headers["X-Upstream"] == "yes"
    echoed = resp.json()
    assert echoed["path"] == "/hello?x=1"
    assert "proxy-connection" not in echoed["headers"]
    assert echoed["headers"]["x-custom"] == "1"

    entries = proxy.context.traffic.entries
    assert len(entries) == 1
    entry = entries[0]
    assert (entry.method, entry.hostname, entry.path, entry.protocol) == ("GET", host, "/hello?x=1", "HTTP")
    assert entry.user_agent == "pytest-agent"


def test_post_body_is_forwarded(proxy, upstream):
    host, port = upstream.server_address[:2]
    with _session(proxy) as session:
        resp = session.post(f"http://{host}:{port}/submit", data=b"payload=1")
    assert resp.status_code == 201
    assert resp.json()["body"] == "payload=1"


def test_request_counts_match_distinct_hosts(proxy, upstream):
    port = upstream.server_address[1]
    targets = ["127.0.0.1", "127.0.0.1", "127.0.0.2", "127.0.0.1", "127.0.0.3", "127.0.0.2"]
    with _session(proxy) as session:
        for host in targets:
            session.get(f"http://{host}:{port}/")

    entries = proxy.context.traffic.entries
    assert len(entries) == len(targets)
    stats = proxy.context.traffic.compute_stats()
    assert stats.total_requests == 6
    assert stats.unique_domains == 3
    assert [(d.domain, d.count) for d in stats.top_domains] == [("127.0.0.1", 3), ("127.0.0.2", 2), ("127.0.0.3", 1)]
    assert sum(d.count for d in stats.top_domains) == 6


def test_upstream_failure_returns_500_but_is_logged(proxy):
    with _session(proxy) as session:
        resp = session.get(f"http://127.0.0.1:{closed_port()}/down")
    assert resp.status_code == 500
    assert resp.text == "Proxy error"
    assert len(proxy.context.traffic.entries) == 1


def test_unresolvable_request_gets_400_and_no_entry(proxy):
    with socket.create_connection(proxy.server_address[:2], timeout=5) as client:
        client.sendall(b"GET /no-host HTTP/1.0\r\nUser-Agent: raw\r\n\r\n")
        response = recv_until_close(client)
    assert response.startswith(b"HTTP/1.1 400")
    assert b"Could not determine target hostname" in response
    assert proxy.context.traffic.entries == []


def test_connect_tunnel(proxy, echo_server):
    with socket.create_connection(proxy.server_address[:2], timeout=5) as client:
        client.sendall(
            f"CONNECT 127.0.0.1:{echo_server.port} HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n".encode() + b"early-head"
        )
        assert recv_exactly(client, len(CONNECT_ESTABLISHED)) == b"HTTP/1.1 200 Connection Established\r\n\r\n"
        assert recv_exactly(client, len(b"early-head")) == b"early-head"
        client.sendall(b"ping")
        assert recv_exactly(client, 4) == b"ping"

    entries = proxy.context.traffic.entries
    assert len(entries) == 1
    assert (entries[0].method, entries[0].hostname, entries[0].path, entries[0].protocol) == (
        "CONNECT",
        "127.0.0.1",
        "/",
        "HTTPS",
    )


def test_connect_failure_returns_500(proxy):
    with socket.create_connection(proxy.server_address[:2], timeout=5) as client:
        client.sendall(f"CONNECT 127.0.0.1:{closed_port()} HTTP/1.1\r\n\r\n".encode())
        response = recv_until_close(client)
    assert response.startswith(b"HTTP/1.1 500")
    assert proxy.context.traffic.entries == []


def test_audit_file_written(proxy, upstream):
    host, port = upstream.server_address[:2]
    with _session(proxy) as session:
        session.get(f"http://{host}:{port}/logged", headers={"User-Agent": "agent/1.0"})
    line = open(proxy.context.config.audit_log, encoding="utf-8").read().strip()
    parts = line.split(" | ")
    assert parts[1:] == ["HTTP", "GET", f"{host}/logged", "agent/1.0"]


def _raw_exchange(proxy, request: bytes) -> tuple[bytes, bytes]:
    with socket.create_connection(proxy.server_address[:2], timeout=5) as client:
        client.sendall(request)
        response = recv_until_close(client)
    head, _, body = response.partition(b"\r\n\r\n")
    return head, body


def test_no_client_default_headers_are_added(proxy, upstream):
    host, port = upstream.server_address[:2]
    head, body = _raw_exchange(proxy, f"GET http://{host}:{port}/bare HTTP/1.0\r\n\r\n".encode())

    assert head.startswith(b"HTTP/1.1 200")
    seen = json.loads(body)["headers"]
    for name in ("user-agent", "accept-encoding", "accept", "connection"):
        assert name not in seen
    assert proxy.context.traffic.entries[0].user_agent is None


def test_extension_method_is_relayed_and_logged(proxy, upstream):
    host, port = upstream.server_address[:2]
    head, body = _raw_exchange(proxy, f"PROPFIND http://{host}:{port}/dav HTTP/1.0\r\n\r\n".encode())

    assert head.startswith(b"HTTP/1.1 200")
    assert json.loads(body)["method"] == "PROPFIND"
    entries = proxy.context.traffic.entries
    assert [(e.method, e.hostname, e.path) for e in entries] == [("PROPFIND", host, "/dav")]
