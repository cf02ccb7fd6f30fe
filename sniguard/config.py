from __future__ import annotations

import os
from dataclasses import dataclass

UNKNOWN_SNI_POLICIES = ("forward", "block")


class ConfigError(ValueError):
    pass


@dataclass(slots=True)
class ProxyConfig:
    listen_host: str = "0.0.0.0"
    http_port: int = 8888
    sni_port: int = 8443
    upstream_port: int = 443
    fallback_host: str = "localhost"
    unknown_sni: str = "forward"
    blocklist_path: str = "policies/blocklist.yaml"
    audit_log: str = "browser_traffic.log"
    export_path: str = "traffic_export.json"
    connect_timeout: float = 10.0
    stats_interval: float = 30.0
    top_n: int = 10
    read_size: int = 65536

    def validate(self) -> "ProxyConfig":
        for name in ("http_port", "sni_port", "upstream_port"):
            value = getattr(self, name)
            if not 0 <= value <= 65535:
                raise ConfigError(f"{name} out of range: {value}")
        if self.unknown_sni not in UNKNOWN_SNI_POLICIES:
            raise ConfigError(f"unknown_sni must be one of {', '.join(UNKNOWN_SNI_POLICIES)}: {self.unknown_sni}")
        if self.connect_timeout <= 0:
            raise ConfigError("connect_timeout must be positive")
        if self.top_n < 1:
            raise ConfigError("top_n must be at least 1")
        if self.read_size < 1:
            raise ConfigError("read_size must be positive")
        return self


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer: {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number: {raw!r}") from exc


def load_proxy_config() -> ProxyConfig:
    defaults = ProxyConfig()
    return ProxyConfig(
        listen_host=os.environ.get("SNIGUARD_LISTEN_HOST", defaults.listen_host),
        http_port=_env_int("SNIGUARD_HTTP_PORT", defaults.http_port),
        sni_port=_env_int("SNIGUARD_SNI_PORT", defaults.sni_port),
        upstream_port=_env_int("SNIGUARD_UPSTREAM_PORT", defaults.upstream_port),
        fallback_host=os.environ.get("SNIGUARD_FALLBACK_HOST", defaults.fallback_host),
        unknown_sni=os.environ.get("SNIGUARD_UNKNOWN_SNI", defaults.unknown_sni).lower(),
        blocklist_path=os.environ.get("SNIGUARD_BLOCKLIST", defaults.blocklist_path),
        audit_log=os.environ.get("SNIGUARD_AUDIT_LOG", defaults.audit_log),
        export_path=os.environ.get("SNIGUARD_EXPORT", defaults.export_path),
        connect_timeout=_env_float("SNIGUARD_CONNECT_TIMEOUT", defaults.connect_timeout),
        stats_interval=_env_float("SNIGUARD_STATS_INTERVAL", defaults.stats_interval),
        top_n=_env_int("SNIGUARD_TOP_N", defaults.top_n),
        read_size=_env_int("SNIGUARD_READ_SIZE", defaults.read_size),
    ).validate()
