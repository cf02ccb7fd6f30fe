from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from sniguard.audit.ledger import TrafficLog, tail
from sniguard.audit.render import render_markdown_report, render_stats
from sniguard.config import ConfigError, ProxyConfig, load_proxy_config
from sniguard.context import build_context
from sniguard.policy.blocklist import BlockListError, load_blocklist
from sniguard.service import ProxyService

app = typer.Typer(help="sniguard CLI")
audit_app = typer.Typer(help="Audit log commands")
blocklist_app = typer.Typer(help="Block list commands")
app.add_typer(audit_app, name="audit")
app.add_typer(blocklist_app, name="blocklist")
console = Console()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load_config(**overrides: object) -> ProxyConfig:
    try:
        config = load_proxy_config()
        for key, value in overrides.items():
            if value is not None:
                setattr(config, key, value)
        return config.validate()
    except ConfigError as exc:
        console.print(f"[red]FAIL[/red] invalid configuration: {exc}")
        raise typer.Exit(2)


def _print_setup_hints(config: ProxyConfig) -> None:
    host = "localhost" if config.listen_host in {"0.0.0.0", "::"} else config.listen_host
    console.print(f"Configure your browser's HTTP and HTTPS proxy to: {host}:{config.http_port}")
    console.print(f"Audit log: {config.audit_log or '<disabled>'}")
    console.print("Stop with Ctrl-C to print statistics and export a snapshot.")


def _serve(config: ProxyConfig, enable_forward: bool, enable_sni: bool) -> None:
    try:
        context = build_context(config)
    except BlockListError as exc:
        console.print(f"[red]FAIL[/red] invalid block list: {exc}")
        raise typer.Exit(2)

    service = ProxyService(
        context,
        report=lambda text: console.print(text, markup=False, highlight=False),
        enable_forward=enable_forward,
        enable_sni=enable_sni,
    )
    try:
        service.start()
    except OSError as exc:
        console.print(f"[red]FAIL[/red] could not listen: {exc}")
        raise typer.Exit(1)

    if enable_forward:
        _print_setup_hints(config)
    try:
        service.wait()
    except KeyboardInterrupt:
        console.print("\nShutting down...")
        if enable_forward:
            service.print_stats()
            console.print(f"exported {service.export()}")
    finally:
        service.stop()


@app.command("serve")
def serve(
    host: str = typer.Option(None, "--host", help="Listen address"),
    http_port: int = typer.Option(None, "--http-port", help="Forward proxy port"),
    sni_port: int = typer.Option(None, "--sni-port", help="SNI blocking proxy port"),
    blocklist: str = typer.Option(None, "--blocklist", help="Path to block list YAML"),
    audit_log: str = typer.Option(None, "--audit-log"),
    export: str = typer.Option(None, "--export", help="Snapshot written on shutdown"),
    unknown_sni: str = typer.Option(None, "--unknown-sni", help="forward or block"),
    stats_interval: float = typer.Option(None, "--stats-interval", help="seconds, 0 disables"),
    log_level: str = typer.Option(os.environ.get("SNIGUARD_LOG_LEVEL", "info"), "--log-level"),
) -> None:
    _configure_logging(log_level)
    config = _load_config(
        listen_host=host,
        http_port=http_port,
        sni_port=sni_port,
        blocklist_path=blocklist,
        audit_log=audit_log,
        export_path=export,
        unknown_sni=unknown_sni,
        stats_interval=stats_interval,
    )
    _serve(config, enable_forward=True, enable_sni=True)


@app.command("forward-proxy")
def forward_proxy(
    host: str = typer.Option(None, "--host"),
    port: int = typer.Option(None, "--port"),
    audit_log: str = typer.Option(None, "--audit-log"),
    export: str = typer.Option(None, "--export"),
    log_level: str = typer.Option(os.environ.get("SNIGUARD_LOG_LEVEL", "info"), "--log-level"),
) -> None:
    _configure_logging(log_level)
    config = _load_config(listen_host=host, http_port=port, audit_log=audit_log, export_path=export, blocklist_path="")
    _serve(config, enable_forward=True, enable_sni=False)


@app.command("sni-proxy")
def sni_proxy(
    host: str = typer.Option(None, "--host"),
    port: int = typer.Option(None, "--port"),
    blocklist: str = typer.Option(None, "--blocklist"),
    upstream_port: int = typer.Option(None, "--upstream-port"),
    unknown_sni: str = typer.Option(None, "--unknown-sni", help="forward or block"),
    log_level: str = typer.Option(os.environ.get("SNIGUARD_LOG_LEVEL", "info"), "--log-level"),
) -> None:
    _configure_logging(log_level)
    config = _load_config(
        listen_host=host,
        sni_port=port,
        blocklist_path=blocklist,
        upstream_port=upstream_port,
        unknown_sni=unknown_sni,
        stats_interval=0.0,
    )
    _serve(config, enable_forward=False, enable_sni=True)


@audit_app.command("tail")
def audit_tail(
    lines: int = typer.Option(20, "--lines"),
    audit_log: str = typer.Option("browser_traffic.log", "--audit-log"),
) -> None:
    for entry in tail(audit_log, lines):
        console.print_json(data=asdict(entry))


@audit_app.command("report")
def audit_report(
    audit_log: str = typer.Option("browser_traffic.log", "--audit-log"),
    output: str = typer.Option("", "--output", help="Write markdown here instead of printing stats"),
    top: int = typer.Option(10, "--top"),
) -> None:
    log = TrafficLog.from_audit_file(audit_log)
    if not output:
        console.print(render_stats(log.compute_stats(top_n=top)), markup=False, highlight=False)
        return
    output_path = Path(output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(render_markdown_report(log.entries, top_n=top), encoding="utf-8")
    console.print(f"wrote {output_path}")


@audit_app.command("export")
def audit_export(
    audit_log: str = typer.Option("browser_traffic.log", "--audit-log"),
    output: str = typer.Option("traffic_export.json", "--output"),
    top: int = typer.Option(10, "--top"),
) -> None:
    log = TrafficLog.from_audit_file(audit_log)
    out = log.export(output, top_n=top)
    console.print(f"exported {len(log)} entries to {out}")


@blocklist_app.command("show")
def blocklist_show(blocklist: str = typer.Option("policies/blocklist.yaml", "--blocklist")) -> None:
    try:
        loaded = load_blocklist(blocklist)
    except BlockListError as exc:
        console.print(f"[red]FAIL[/red] {exc}")
        raise typer.Exit(2)
    console.print_json(json.dumps({"blocklist_id": loaded.blocklist_id, "domains": sorted(loaded.domains)}))


@blocklist_app.command("check")
def blocklist_check(
    hostname: str = typer.Argument(...),
    blocklist: str = typer.Option("policies/blocklist.yaml", "--blocklist"),
) -> None:
    try:
        loaded = load_blocklist(blocklist)
    except BlockListError as exc:
        console.print(f"[red]FAIL[/red] {exc}")
        raise typer.Exit(2)
    if loaded.is_blocked(hostname):
        console.print(f"[red]BLOCK[/red] {hostname}")
        raise typer.Exit(1)
    console.print(f"[green]ALLOW[/green] {hostname}")


if __name__ == "__main__":
    app()
