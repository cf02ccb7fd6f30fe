from __future__ import annotations

import logging
import socketserver
from dataclasses import dataclass

from sniguard.config import ProxyConfig
from sniguard.context import ProxyContext
from sniguard.net.tunnel import (
    PeerDisconnect,
    ThreadingTCPServer,
    UpstreamConnectFailure,
    bridge,
    open_upstream,
    read_first_chunk,
)
from sniguard.policy.blocklist import BlockList
from sniguard.tls.clienthello import extract_sni

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TunnelDecision:
    allowed: bool
    reason: str
    rule_id: str
    hostname: str | None
    target: str = ""


def decide(first_chunk: bytes, blocklist: BlockList, config: ProxyConfig) -> TunnelDecision:
    hostname = extract_sni(first_chunk) or None
    if hostname is None:
        if config.unknown_sni == "block":
            return TunnelDecision(False, "no SNI in first chunk", "sni_unknown_block", None)
        return TunnelDecision(True, "no SNI in first chunk", "sni_unknown_forward", None, config.fallback_host)
    if blocklist.is_blocked(hostname):
        return TunnelDecision(False, f"domain blocked: {hostname}", "sni_blocklisted", hostname)
    return TunnelDecision(True, f"domain allowed: {hostname}", "sni_allow", hostname, hostname)


class SNIProxyHandler(socketserver.BaseRequestHandler):
    server: "SNIProxyServer"

    def handle(self) -> None:
        context = self.server.context
        peer = "%s:%s" % self.client_address[:2]

        try:
            first_chunk = read_first_chunk(self.request, context.config.read_size)
        except PeerDisconnect as exc:
            logger.debug("%s: %s", peer, exc)
            return

        decision = decide(first_chunk, context.blocklist, context.config)
        if not decision.allowed:
            logger.warning("Blocked: %s (%s, client %s)", decision.hostname or "<no sni>", decision.rule_id, peer)
            return

        port = context.config.upstream_port
        try:
            upstream = open_upstream(decision.target, port, timeout=context.config.connect_timeout)
        except UpstreamConnectFailure as exc:
            logger.error("Remote socket error for %s: %s", decision.target or "<default>", exc)
            return

        try:
            upstream.sendall(first_chunk)
        except OSError as exc:
            logger.error("Remote socket error for %s: %s", decision.target, exc)
            upstream.close()
            return

        logger.debug("%s tunneling to %s:%s (%s)", peer, decision.target, port, decision.rule_id)
        sent_up, sent_down = bridge(self.request, upstream, chunk_size=context.config.read_size)
        logger.debug(
            "%s tunnel to %s closed (%d bytes up, %d bytes down)",
            peer,
            decision.target,
            len(first_chunk) + sent_up,
            sent_down,
        )


class SNIProxyServer(ThreadingTCPServer):
    def __init__(self, server_address: tuple[str, int], context: ProxyContext):
        self.context = context
        super().__init__(server_address, SNIProxyHandler)
