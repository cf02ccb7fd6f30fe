from __future__ import annotations

from .ledger import LogEntry, TrafficStats, compute_stats


def render_stats(stats: TrafficStats) -> str:
    lines = [
        "=== TRAFFIC STATISTICS ===",
        f"Total Requests: {stats.total_requests}",
        f"Unique Domains: {stats.unique_domains}",
        f"HTTP Requests: {stats.protocol_stats.http}",
        f"HTTPS Requests: {stats.protocol_stats.https}",
        "",
        f"Top {len(stats.top_domains)} Domains:",
    ]
    for idx, item in enumerate(stats.top_domains, start=1):
        lines.append(f"  {idx}. {item.domain} ({item.count} requests)")
    return "\n".join(lines)


def render_markdown_report(entries: list[LogEntry], top_n: int = 10) -> str:
    if not entries:
        return "# sniguard Traffic Report\n\nNo entries found."

    stats = compute_stats(entries, top_n=top_n)
    lines = [
        "# sniguard Traffic Report",
        "",
        "## Summary",
        f"- Requests: {stats.total_requests}",
        f"- Unique domains: {stats.unique_domains}",
        f"- HTTP: {stats.protocol_stats.http}",
        f"- HTTPS: {stats.protocol_stats.https}",
        "",
        "## Top Domains",
    ]
    for item in stats.top_domains:
        lines.append(f"- {item.domain}: {item.count}")

    lines.append("")
    lines.append("## Recent Requests")
    for entry in entries[-20:]:
        agent = entry.user_agent or "-"
        lines.append(f"- `{entry.timestamp}` `{entry.protocol}` `{entry.method}` {entry.hostname}{entry.path} ({agent})")

    return "\n".join(lines)
