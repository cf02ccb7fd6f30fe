from __future__ import annotations

from dataclasses import dataclass

from sniguard.audit.ledger import TrafficLog
from sniguard.config import ProxyConfig
from sniguard.policy.blocklist import BlockList, load_blocklist


@dataclass(slots=True)
class ProxyContext:
    """State shared by every connection handler of one running process."""

    config: ProxyConfig
    blocklist: BlockList
    traffic: TrafficLog


def build_context(config: ProxyConfig) -> ProxyContext:
    blocklist = load_blocklist(config.blocklist_path) if config.blocklist_path else BlockList()
    traffic = TrafficLog(config.audit_log or None)
    return ProxyContext(config=config, blocklist=blocklist, traffic=traffic)
