from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

AUDIT_FIELD_SEPARATOR = " | "
UNKNOWN_USER_AGENT = "Unknown"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class LogEntry:
    timestamp: str
    method: str
    hostname: str
    path: str
    protocol: str
    user_agent: str | None = None

    def to_line(self) -> str:
        return AUDIT_FIELD_SEPARATOR.join(
            [
                self.timestamp,
                self.protocol,
                self.method,
                f"{self.hostname}{self.path}",
                self.user_agent or UNKNOWN_USER_AGENT,
            ]
        )

    @classmethod
    def from_line(cls, line: str) -> "LogEntry":
        parts = line.rstrip("\r\n").split(AUDIT_FIELD_SEPARATOR, 4)
        if len(parts) != 5:
            raise ValueError(f"not an audit line: {line!r}")
        timestamp, protocol, method, target, user_agent = parts
        slash = target.find("/")
        hostname, path = (target, "") if slash < 0 else (target[:slash], target[slash:])
        return cls(
            timestamp=timestamp,
            method=method,
            hostname=hostname,
            path=path,
            protocol=protocol,
            user_agent=None if user_agent == UNKNOWN_USER_AGENT else user_agent,
        )


@dataclass(slots=True)
class DomainCount:
    domain: str
    count: int


@dataclass(slots=True)
class ProtocolSplit:
    http: int = 0
    https: int = 0


@dataclass(slots=True)
class TrafficStats:
    total_requests: int = 0
    unique_domains: int = 0
    top_domains: list[DomainCount] = field(default_factory=list)
    protocol_stats: ProtocolSplit = field(default_factory=ProtocolSplit)

    def to_dict(self) -> dict:
        return asdict(self)


def compute_stats(entries: list[LogEntry], top_n: int = 10) -> TrafficStats:
    # Counter keeps first-seen order and sorted() is stable, so equal counts
    # stay in the order their hostname first appeared.
    domain_counts = Counter(entry.hostname for entry in entries)
    ranked = sorted(domain_counts.items(), key=lambda item: -item[1])[:top_n]
    protocols = Counter(entry.protocol for entry in entries)
    return TrafficStats(
        total_requests=len(entries),
        unique_domains=len(domain_counts),
        top_domains=[DomainCount(domain, count) for domain, count in ranked],
        protocol_stats=ProtocolSplit(http=protocols.get("HTTP", 0), https=protocols.get("HTTPS", 0)),
    )


class TrafficLog:
    """In-memory audit log shared by both proxies.

    Every mutation takes ``_lock``; handler threads never touch the entry list
    or hostname set directly.
    """

    def __init__(self, audit_path: str | Path | None = None):
        self.audit_path = Path(audit_path) if audit_path else None
        if self.audit_path is not None:
            self.audit_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._entries: list[LogEntry] = []
        self._hostnames: set[str] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    @property
    def hostnames(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._hostnames)

    def record(self, entry: LogEntry) -> LogEntry:
        with self._lock:
            if self.audit_path is not None:
                try:
                    with self.audit_path.open("a", encoding="utf-8") as fh:
                        fh.write(entry.to_line() + "\n")
                except OSError as exc:
                    logger.error("Could not append to audit log %s: %s", self.audit_path, exc)
            self._entries.append(entry)
            self._hostnames.add(entry.hostname)
        return entry

    def compute_stats(self, top_n: int = 10) -> TrafficStats:
        return compute_stats(self.entries, top_n=top_n)

    def export(self, destination: str | Path, top_n: int = 10) -> Path:
        entries = self.entries
        payload = {
            "export_time": utc_now(),
            "stats": compute_stats(entries, top_n=top_n).to_dict(),
            "logs": [asdict(entry) for entry in entries],
        }
        out_path = Path(destination)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        return out_path

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hostnames.clear()

    @classmethod
    def from_audit_file(cls, path: str | Path) -> "TrafficLog":
        log = cls()
        for entry in read_audit_file(path):
            log.record(entry)
        return log


def read_audit_file(path: str | Path) -> list[LogEntry]:
    path_obj = Path(path)
    if not path_obj.exists():
        return []
    out: list[LogEntry] = []
    for line in path_obj.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            out.append(LogEntry.from_line(line))
        except ValueError:
            continue
    return out


def tail(path: str | Path, n: int = 20) -> list[LogEntry]:
    entries = read_audit_file(path)
    return entries[-n:] if n > 0 else []
