from __future__ import annotations

import logging
import threading
from pathlib import Path
from socketserver import BaseServer
from typing import Callable

from sniguard.audit.render import render_stats
from sniguard.context import ProxyContext
from sniguard.proxy.forward_proxy import ForwardProxyServer
from sniguard.proxy.sni_proxy import SNIProxyServer

logger = logging.getLogger(__name__)


class ProxyService:
    """Runs the forward proxy and the SNI proxy side by side."""

    def __init__(
        self,
        context: ProxyContext,
        report: Callable[[str], None] | None = None,
        enable_forward: bool = True,
        enable_sni: bool = True,
    ):
        self.context = context
        self.report = report or logger.info
        self.enable_forward = enable_forward
        self.enable_sni = enable_sni
        self.servers: list[BaseServer] = []
        self._threads: list[threading.Thread] = []
        self._stopped = threading.Event()

    def start(self) -> None:
        """Bind every enabled listener, then serve each on its own thread.

        If any bind fails the already bound listeners are closed and the
        OSError propagates; nothing is left serving.
        """
        config = self.context.config
        servers: list[BaseServer] = []
        try:
            if self.enable_forward:
                servers.append(ForwardProxyServer((config.listen_host, config.http_port), self.context))
            if self.enable_sni:
                servers.append(SNIProxyServer((config.listen_host, config.sni_port), self.context))
        except OSError:
            for server in servers:
                server.server_close()
            raise

        self.servers = servers
        if self.enable_forward:
            logger.info("Browser traffic logger listening on %s:%s", config.listen_host, config.http_port)
        if self.enable_sni:
            logger.info(
                "HTTPS blocking proxy listening on %s:%s (%d blocked domains)",
                config.listen_host,
                config.sni_port,
                len(self.context.blocklist),
            )
        for server in self.servers:
            thread = threading.Thread(target=server.serve_forever, name=type(server).__name__, daemon=True)
            thread.start()
            self._threads.append(thread)

    def addresses(self) -> list[tuple[str, int]]:
        return [server.server_address[:2] for server in self.servers]

    def print_stats(self) -> None:
        stats = self.context.traffic.compute_stats(top_n=self.context.config.top_n)
        self.report(render_stats(stats))

    def export(self, destination: str | Path | None = None) -> Path:
        out = self.context.traffic.export(
            destination or self.context.config.export_path, top_n=self.context.config.top_n
        )
        logger.info("Logs exported to: %s", out)
        return out

    def wait(self) -> None:
        """Block until stop(), reporting statistics every ``stats_interval`` seconds."""
        interval = self.context.config.stats_interval
        while not self._stopped.wait(interval if interval > 0 else None):
            self.print_stats()

    def stop(self) -> None:
        self._stopped.set()
        for server in self.servers:
            server.shutdown()
            server.server_close()
        for thread in self._threads:
            thread.join(timeout=5)
        self.servers.clear()
        self._threads.clear()
        logger.info("Proxy server stopped")
