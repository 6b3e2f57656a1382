"""Tests for the Markdown acceptance report and console table (winscan.report)."""

from __future__ import annotations

import pytest
from rich.console import Console

from tests.conftest import make_scored
from winscan.models import CollectionError
from winscan.report import (
    ReportError,
    build_report,
    format_currency,
    format_percentage,
    recommendations,
    render_selection_table,
    write_report,
)
from winscan.selection import summarize
from winscan.storage import Storage, generate_error_summary

_DISTRIBUTION = {
    "high_confidence": 3,
    "medium_confidence": 1,
    "low_confidence": 0,
    "strict_win_rate_count": 4,
    "proxy_only_count": 0,
    "no_win_rate_count": 0,
}


def _completed_run(storage: Storage, errors: list[CollectionError] | None = None) -> str:
    accounts = [make_scored("0xa", 0.9), make_scored("0xb", 0.7, strict_win_rate=None, proxy_win_rate=0.65)]
    run_id = storage.create_run({"min_trades": 50})
    for account in accounts:
        storage.upsert_account(run_id, account)
        storage.create_metrics_snapshot(run_id, account)
    storage.record_selected_accounts(run_id, accounts)
    storage.complete_run(
        run_id,
        {
            "accounts_processed": 10,
            "accounts_scored": 4,
            "accounts_selected": 2,
            "accounts_failed": len(errors or []),
            "accounts_partial": 0,
            "phase1_candidates": 10,
            "phase1_passed": 4,
            "phase2_enriched": 4,
            "api_requests": 42,
            "selection_summary": summarize(accounts).model_dump(),
            "selection_stats": {"total_input": 4, "passed_filters": 2, "selected_count": 2},
            "error_summary": generate_error_summary(errors or []).model_dump(),
            "config_used": {"min_trades": 50, "min_win_rate": 0.58, "top_n": 100},
        },
    )
    return run_id


class TestFormatting:
    def test_percentage(self):
        assert format_percentage(0.6667) == "66.7%"
        assert format_percentage(None) == "N/A"

    def test_currency(self):
        assert format_currency(12345.678) == "$12,345.68"
        assert format_currency(None) == "N/A"


class TestBuildReport:
    def test_no_runs(self, storage: Storage):
        with pytest.raises(ReportError):
            build_report(storage)

    def test_unknown_run(self, storage: Storage):
        with pytest.raises(ReportError):
            build_report(storage, "missing")

    def test_sections_present(self, storage: Storage):
        run_id = _completed_run(storage)
        report = build_report(storage)

        assert report.startswith("# Polymarket Winner Scanner - Acceptance Report")
        for heading in (
            "## Run Information",
            "## Executive Summary",
            "## Selection Criteria Applied",
            "## Performance Metrics",
            "## Top 2 Selected Accounts",
            "## Error Summary",
            "## Data Quality Assessment",
            "## Recommendations",
            "## Technical Notes",
            "## Acceptance Checklist",
        ):
            assert heading in report
        assert run_id in report
        assert "**No errors encountered during sync.**" in report
        assert "- **API Requests Issued:** `42`" in report
        assert "| 1 | `0xa` | 0.9000 | 70.0% |" in report
        assert "| 2 | `0xb` | 0.7000 | 65.0% |" in report
        assert "- [x] Run completed successfully" in report

    def test_error_samples_listed(self, storage: Storage):
        errors = [CollectionError(address="0xdead", type="phase1_failure", message="HTTP 503")]
        run_id = _completed_run(storage, errors)
        report = build_report(storage, run_id)

        assert "**Total Errors:** `1`" in report
        assert "| phase1_failure | 1 |" in report
        assert "`0xdead`: HTTP 503" in report

    def test_failed_run_reports_error(self, storage: Storage):
        run_id = storage.create_run({"min_trades": 50})
        storage.fail_run(run_id, "TimeoutError")
        report = build_report(storage, run_id)

        assert "- **Error:** `TimeoutError`" in report
        assert "*No accounts were selected in this run.*" in report
        assert "- [ ] Run completed successfully" in report

    def test_write_report(self, tmp_path):
        path = write_report("# hello\n", tmp_path / "reports" / "run.md")
        assert path.read_text() == "# hello\n"


class TestRecommendations:
    def test_low_selection(self):
        advice = recommendations(2, 0, 10, _DISTRIBUTION)
        assert "Selection count is low" in advice[0]
        assert "No errors occurred" in advice[1]

    def test_high_error_rate(self):
        advice = recommendations(20, 5, 10, _DISTRIBUTION)
        assert "within reasonable range" in advice[0]
        assert "Error rate is high" in advice[1]

    def test_low_confidence_warning(self):
        distribution = dict(_DISTRIBUTION, low_confidence=5, high_confidence=1)
        advice = recommendations(60, 0, 100, distribution)
        assert "Selection count is high" in advice[0]
        assert "low-confidence" in advice[-1]


def test_render_selection_table(storage: Storage):
    run_id = _completed_run(storage)
    table = render_selection_table(storage.get_selected_accounts(run_id))

    assert table.row_count == 2
    console = Console(record=True, width=200)
    console.print(table)
    text = console.export_text()
    assert "0xa" in text
    assert "0.9000" in text
