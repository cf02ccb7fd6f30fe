from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


class BlockListError(ValueError):
    pass


def normalize_hostname(hostname: str) -> str:
    host = hostname.strip().lower()
    if host.endswith("."):
        host = host[:-1]
    return host


@dataclass(frozen=True, slots=True)
class BlockList:
    blocklist_id: str = "empty"
    domains: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_domains(cls, domains: list[str], blocklist_id: str = "inline") -> "BlockList":
        return cls(blocklist_id=blocklist_id, domains=frozenset(normalize_hostname(d) for d in domains if d.strip()))

    def __contains__(self, hostname: object) -> bool:
        if not isinstance(hostname, str) or not hostname:
            return False
        return normalize_hostname(hostname) in self.domains

    def __len__(self) -> int:
        return len(self.domains)

    def is_blocked(self, hostname: str | None) -> bool:
        return hostname is not None and hostname in self


def load_blocklist(path: str | Path) -> BlockList:
    path_obj = Path(path)
    if not path_obj.exists():
        raise BlockListError(f"Block list file not found: {path_obj}")

    data = yaml.safe_load(path_obj.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise BlockListError("Block list must be a mapping")

    domains = data.get("domains")
    if domains is None:
        domains = []
    if not isinstance(domains, list):
        raise BlockListError("domains must be a list")
    for idx, item in enumerate(domains):
        if not isinstance(item, str):
            raise BlockListError(f"Invalid domain at index {idx}")

    return BlockList.from_domains(domains, blocklist_id=str(data.get("blocklist_id", path_obj.stem)))
