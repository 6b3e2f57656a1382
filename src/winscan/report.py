"""Acceptance report generation for a sync run (Markdown) and console tables (rich)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rich.table import Table

from winscan import __version__
from winscan.storage import Storage

_TOP_ACCOUNTS = 10
_MIN_ACCEPTABLE_SELECTION = 5
_TARGET_WIN_RATE = 0.55
_MAX_ERROR_RATE = 0.1
_SOURCES_PER_ACCOUNT = 3


class ReportError(Exception):
    """Raised when the requested run does not exist."""


def format_percentage(value: float | None) -> str:
    if value is None:
        return "N/A"
    return f"{value * 100:.1f}%"


def format_currency(value: float | None) -> str:
    if value is None:
        return "N/A"
    return f"${value:,.2f}"


def _check(ok: bool) -> str:
    return "x" if ok else " "


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _effective_win_rate(account: dict[str, Any]) -> float | None:
    if account.get("strict_win_rate") is not None:
        return account["strict_win_rate"]
    return account.get("proxy_win_rate")


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


def _run_information(run: dict[str, Any], config: dict[str, Any]) -> list[str]:
    lines = [
        "## Run Information",
        f"- **Run ID:** `{run['id']}`",
        f"- **Started At:** `{run['started_at']}`",
        f"- **Completed At:** `{run.get('completed_at') or 'N/A'}`",
        f"- **Status:** `{run['status']}`",
    ]
    if run.get("error_message"):
        lines.append(f"- **Error:** `{run['error_message']}`")
    lines += ["- **Configuration:**", "", "```json", json.dumps(config, indent=2), "```", ""]
    return lines


def _criteria(config: dict[str, Any]) -> list[str]:
    return [
        "## Selection Criteria Applied",
        "| Criteria | Threshold | Description |",
        "|----------|-----------|-------------|",
        f"| Minimum Trades | `{config.get('min_trades', 50)}` | Account must have at least this many trades |",
        f"| Minimum Volume | `{format_currency(config.get('min_volume_usd', 5000))}` | Minimum USD trading volume |",
        f"| Minimum Win Rate | `{format_percentage(config.get('min_win_rate', 0.58))}` | Minimum win rate (strict or proxy) |",
        f"| Minimum Confidence | `{config.get('min_confidence', 0.1)}` | Minimum confidence score |",
        f"| Minimum Realized PnL | `{format_currency(config.get('min_pnl', 0))}` | Profitable or break-even only |",
        f"| Top N Selection | `{config.get('top_n', 100)}` | Select top N accounts by composite score |",
        "",
    ]


def _performance(stats: dict[str, Any]) -> list[str]:
    summary = stats.get("selection_summary")
    if not summary:
        return []
    selection_stats = stats.get("selection_stats") or {}
    total_input = selection_stats.get("total_input", stats.get("accounts_scored", 0))
    passed = selection_stats.get("passed_filters", 0)
    pass_rate = passed / total_input if total_input else 0.0
    return [
        "## Performance Metrics",
        "### Selection Statistics",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Candidate Addresses | `{stats.get('phase1_candidates', 0)}` |",
        f"| Passed Phase 1 Screen | `{stats.get('phase1_passed', 0)}` |",
        f"| Fully Enriched | `{stats.get('phase2_enriched', 0)}` |",
        f"| Scored Accounts | `{total_input}` |",
        f"| Passed Threshold Filters | `{passed}` |",
        f"| Final Selection Count | `{stats.get('accounts_selected', 0)}` |",
        f"| Filter Pass Rate | `{format_percentage(pass_rate)}` |",
        "",
        "### Quality Metrics",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Average Win Rate | `{format_percentage(summary.get('avg_win_rate'))}` |",
        f"| Average Volume | `{format_currency(summary.get('avg_volume'))}` |",
        f"| Average Confidence | `{summary.get('avg_confidence', 0.0):.3f}` |",
        f"| Average Composite Score | `{summary.get('avg_score', 0.0):.4f}` |",
        f"| Total Volume (Selected) | `{format_currency(summary.get('total_volume'))}` |",
        f"| Profitable Accounts | `{summary.get('profitable_count', 0)}/{summary.get('count', 0)}` |",
        f"| Profitable Percentage | `{format_percentage(summary.get('profitable_fraction'))}` |",
        "",
    ]


def _top_accounts(accounts: list[dict[str, Any]]) -> list[str]:
    top = accounts[:_TOP_ACCOUNTS]
    lines = [f"## Top {len(top)} Selected Accounts"]
    if not top:
        return lines + ["*No accounts were selected in this run.*", ""]
    lines += [
        "| Rank | Address | Composite Score | Win Rate | Volume (USD) | Trades | Reason Tags |",
        "|------|---------|-----------------|----------|--------------|--------|-------------|",
    ]
    for account in top:
        lines.append(
            f"| {account['rank']} | `{account['address']}` "
            f"| {account['selection_score']:.4f} "
            f"| {format_percentage(_effective_win_rate(account))} "
            f"| {format_currency(account.get('total_volume_usd'))} "
            f"| {account.get('total_trades') or 0} "
            f"| {', '.join(account['reason_tags'])} |"
        )
    return lines + [""]


def _errors(stats: dict[str, Any]) -> list[str]:
    summary = stats.get("error_summary") or {}
    lines = ["## Error Summary"]
    if not summary.get("has_errors"):
        return lines + ["**No errors encountered during sync.**", ""]

    lines += [
        f"**Total Errors:** `{summary['error_count']}`",
        "",
        "| Error Type | Count |",
        "|------------|-------|",
    ]
    lines += [f"| {t} | {n} |" for t, n in summary.get("errors_by_type", {}).items()]
    lines.append("")
    samples = summary.get("sample_errors") or []
    if samples:
        lines.append("### Sample Errors")
        for sample in samples:
            lines.append(f"- **{sample['type']}** ({sample['count']} occurrences):")
            lines += [f"  - `{s['address']}`: {s['message']}" for s in sample["samples"]]
        lines.append("")
    return lines


def _data_quality(distribution: dict[str, int]) -> list[str]:
    return [
        "## Data Quality Assessment",
        "### Confidence Distribution",
        f"- **High Confidence (>=0.5):** `{distribution['high_confidence']}` accounts",
        f"- **Medium Confidence (0.3-0.5):** `{distribution['medium_confidence']}` accounts",
        f"- **Low Confidence (<0.3):** `{distribution['low_confidence']}` accounts",
        "",
        "### Win Rate Reliability",
        f"- **Accounts with Strict Win Rate:** `{distribution['strict_win_rate_count']}`",
        f"- **Accounts with Proxy Win Rate Only:** `{distribution['proxy_only_count']}`",
        f"- **Accounts with No Win Rate Data:** `{distribution['no_win_rate_count']}`",
        "",
    ]


def recommendations(
    selected: int, failed: int, processed: int, distribution: dict[str, int]
) -> list[str]:
    """Threshold-tuning advice derived from the run's outcome."""
    advice = []
    if selected < _MIN_ACCEPTABLE_SELECTION:
        advice.append(
            f"**Selection count is low ({selected} accounts).** "
            "Consider lowering thresholds to increase selection."
        )
    elif selected > 50:
        advice.append(
            f"**Selection count is high ({selected} accounts).** "
            "Consider raising thresholds to improve quality."
        )
    else:
        advice.append(f"**Selection count ({selected} accounts) is within reasonable range.**")

    if failed > processed * _MAX_ERROR_RATE:
        advice.append(
            f"**Error rate is high ({failed}/{processed}).** "
            "Investigate API failures or network issues."
        )
    elif failed > 0:
        advice.append(
            f"**Some errors occurred ({failed}/{processed}).** Review error summary for details."
        )
    else:
        advice.append("**No errors occurred.**")

    if distribution["low_confidence"] > distribution["high_confidence"]:
        advice.append(
            f"**Many low-confidence accounts ({distribution['low_confidence']}).** "
            "Consider increasing discovery count or waiting for more data."
        )
    return advice


def _technical_notes(
    run: dict[str, Any], stats: dict[str, Any], changes: dict[str, int], snapshots: int
) -> list[str]:
    lines = ["## Technical Notes"]
    started = _parse_time(run.get("started_at"))
    completed = _parse_time(run.get("completed_at"))
    processed = stats.get("accounts_processed", 0)
    if started and completed:
        duration = max((completed - started).total_seconds(), 0.0)
        per_account = duration / processed if processed else 0.0
        per_minute = processed / (duration / 60) if duration else 0.0
        lines += [
            "### Run Duration",
            f"- **Total Duration:** `{duration:.0f}` seconds",
            f"- **Average per Account:** `{per_account:.2f}` seconds",
            f"- **Accounts per Minute:** `{per_minute:.1f}`",
            "",
        ]

    requests = stats.get("api_requests")
    lines.append("### API Usage")
    if requests is not None:
        lines.append(f"- **API Requests Issued:** `{requests}`")
    else:
        lines.append(f"- **Estimated API Calls:** `{processed * _SOURCES_PER_ACCOUNT}`")
    lines += [
        "- **Rate Limiting:** Within Polymarket limits (150-200 req/10s)",
        "",
        "### Database Impact",
        f"- **New Accounts Added:** `{changes.get('new_accounts') or 0}`",
        f"- **Existing Accounts Updated:** `{changes.get('updated_accounts') or 0}`",
        f"- **Snapshots Created:** `{snapshots}`",
        "",
    ]
    return lines


def _checklist(run: dict[str, Any], stats: dict[str, Any], config: dict[str, Any]) -> list[str]:
    processed = stats.get("accounts_processed", 0)
    selected = stats.get("accounts_selected", 0)
    failed = stats.get("accounts_failed", 0)
    avg_win_rate = (stats.get("selection_summary") or {}).get("avg_win_rate", 0.0)
    max_errors = processed * _MAX_ERROR_RATE
    return [
        "## Acceptance Checklist",
        f"- [{_check(run['status'] == 'completed')}] Run completed successfully "
        f"(status = `{run['status']}`)",
        f"- [{_check(selected >= _MIN_ACCEPTABLE_SELECTION)}] At least "
        f"`{_MIN_ACCEPTABLE_SELECTION}` accounts selected (actual: {selected})",
        f"- [{_check(avg_win_rate >= _TARGET_WIN_RATE)}] Average win rate >= "
        f"`{format_percentage(_TARGET_WIN_RATE)}` (actual: {format_percentage(avg_win_rate)})",
        f"- [{_check(failed <= max_errors)}] Error count <= `{max_errors:.0f}` (actual: {failed})",
        f"- [ ] All selected accounts have confidence score >= "
        f"`{config.get('min_confidence', 0.1)}` (verify manually)",
        "",
    ]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_report(storage: Storage, run_id: str | None = None) -> str:
    """Render the Markdown acceptance report for *run_id* (default: latest run).

    Raises
    ------
    ReportError
        If no run exists, or *run_id* is unknown.
    """
    if run_id is None:
        run_id = storage.latest_run_id()
        if run_id is None:
            raise ReportError("No runs found in database")
    run_stats = storage.get_run_stats(run_id)
    run = run_stats["run"]
    if run is None:
        raise ReportError(f"Run {run_id} not found")

    stats = run.get("stats") or {}
    config = stats.get("config_used") or run.get("config") or {}
    accounts = storage.get_selected_accounts(run_id)
    distribution = storage.confidence_distribution(run_id)
    changes = storage.account_changes(run_id)

    processed = stats.get("accounts_processed", 0)
    selected = stats.get("accounts_selected", 0)
    failed = stats.get("accounts_failed", 0)
    success_rate = (processed - failed) / processed if processed else 0.0
    top_score = accounts[0]["selection_score"] if accounts else 0.0

    lines = ["# Polymarket Winner Scanner - Acceptance Report", ""]
    lines += _run_information(run, config)
    lines += [
        "## Executive Summary",
        f"- **Accounts Processed:** `{processed}`",
        f"- **Accounts Selected:** `{selected}`",
        f"- **Accounts Failed:** `{failed}`",
        f"- **Accounts With Partial Data:** `{stats.get('accounts_partial', 0)}`",
        f"- **Success Rate:** `{format_percentage(success_rate)}`",
        f"- **Top Account Score:** `{top_score:.4f}`",
        "",
    ]
    lines += _criteria(config)
    lines += _performance(stats)
    lines += _top_accounts(accounts)
    lines += _errors(stats)
    lines += _data_quality(distribution)
    lines.append("## Recommendations")
    lines += [
        f"{i}. {item}"
        for i, item in enumerate(recommendations(selected, failed, processed, distribution), 1)
    ]
    lines.append("")
    lines += _technical_notes(run, stats, changes, run_stats["snapshot_count"])
    lines += _checklist(run, stats, config)
    generated = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    lines += ["---", "", f"*Report generated by winscan v{__version__} at {generated}*", ""]
    return "\n".join(lines)


def write_report(text: str, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def _score_style(score: float) -> str:
    if score >= 0.7:
        return "green"
    if score >= 0.5:
        return "yellow"
    return "dim"


def render_selection_table(accounts: list[dict[str, Any]], title: str = "Selected Accounts") -> Table:
    """Build a rich table from :meth:`Storage.get_selected_accounts` rows."""
    table = Table(title=title, show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Address")
    table.add_column("Score", justify="right")
    table.add_column("Win Rate", justify="right")
    table.add_column("Volume", justify="right")
    table.add_column("Trades", justify="right")
    table.add_column("PnL", justify="right")
    table.add_column("Tags")

    for account in accounts:
        score = account["selection_score"] or 0.0
        pnl = account.get("realized_pnl") or 0.0
        pnl_style = "green" if pnl > 0 else "red" if pnl < 0 else "dim"
        table.add_row(
            str(account["rank"]),
            account["address"],
            f"[{_score_style(score)}]{score:.4f}[/]",
            format_percentage(_effective_win_rate(account)),
            format_currency(account.get("total_volume_usd")),
            str(account.get("total_trades") or 0),
            f"[{pnl_style}]{format_currency(pnl)}[/]",
            ", ".join(account["reason_tags"]),
        )
    return table
