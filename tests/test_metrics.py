"""Tests for the pure metrics calculator (winscan.metrics)."""

from __future__ import annotations

import pytest

from tests.conftest import make_activity, make_closed, make_position
from winscan.metrics import (
    compute_metrics,
    confidence_score,
    count_outcomes,
    proxy_win_rate,
    resolve_win_rate,
    strict_win_rate,
)
from winscan.models import RawClosedPosition, RawPosition


def test_strict_win_rate_excludes_neutral_outcomes():
    closed = [make_closed(10)] * 6 + [make_closed(-5)] * 3 + [make_closed(0)]
    metrics = compute_metrics("0xabc", [], closed, [])
    assert metrics.strict_win_rate == pytest.approx(0.667, abs=1e-3)
    assert metrics.win_count == 6
    assert metrics.loss_count == 3
    assert metrics.neutral_count == 1
    assert metrics.closed_positions_count == 9


def test_strict_win_rate_null_without_decided_outcomes():
    metrics = compute_metrics("0xabc", [], [make_closed(0), make_closed(0)], [])
    assert metrics.strict_win_rate is None
    assert metrics.win_count + metrics.loss_count == 0


def test_strict_win_rate_helper():
    assert strict_win_rate(0, 0) is None
    assert strict_win_rate(3, 1) == 0.75


def test_count_outcomes():
    assert count_outcomes([make_closed(1), make_closed(-1), make_closed(0)]) == (1, 1, 1)


def test_proxy_win_rate():
    positions = [make_position(cash_pnl=5), make_position(cash_pnl=-1), make_position(cash_pnl=0)]
    assert proxy_win_rate(positions) == pytest.approx(1 / 3)
    assert proxy_win_rate([]) is None


def test_confidence_score():
    assert confidence_score(5, 10) == 0.5
    assert confidence_score(5, 0) == 0.0


def test_confidence_uses_decided_over_open_positions():
    closed = [make_closed(1), make_closed(-1), make_closed(0)]
    positions = [make_position()] * 4
    metrics = compute_metrics("0xabc", positions, closed, [])
    assert metrics.confidence_score == 0.5


def test_volume_and_trades_from_activity():
    activity = [make_activity(100.0), make_activity(250.5), make_activity(0.0)]
    metrics = compute_metrics("0xabc", [], [], activity)
    assert metrics.total_volume_usd == pytest.approx(350.5)
    assert metrics.total_trades == 3


def test_realized_pnl_sums_open_positions_only():
    positions = [make_position(realized_pnl=20), make_position(realized_pnl=-5)]
    closed = [make_closed(1000)]
    metrics = compute_metrics("0xabc", positions, closed, [])
    assert metrics.realized_pnl == 15
    assert metrics.closed_realized_pnl == 1000


def test_malformed_numbers_default_to_zero():
    position = RawPosition.model_validate({"cashPnl": "oops", "realizedPnl": None})
    closed = RawClosedPosition.model_validate({"realizedPnl": float("nan")})
    metrics = compute_metrics("0xabc", [position], [closed], [])
    assert metrics.realized_pnl == 0
    assert metrics.neutral_count == 1
    assert metrics.proxy_win_rate == 0.0


def test_empty_inputs():
    metrics = compute_metrics("0xabc", [], [], [])
    assert metrics.strict_win_rate is None
    assert metrics.proxy_win_rate is None
    assert metrics.confidence_score == 0.0
    assert metrics.total_trades == 0
    assert metrics.partial_success is False


def test_failed_sources_mark_partial():
    metrics = compute_metrics("0xabc", [], [], [], failed_sources=("activity",))
    assert metrics.partial_success is True
    assert metrics.failed_sources == ("activity",)


def test_metrics_are_immutable():
    metrics = compute_metrics("0xabc", [], [], [])
    with pytest.raises(Exception):
        metrics.total_trades = 5


def test_resolve_win_rate_prefers_strict():
    assert resolve_win_rate(0.4, 0.9) == 0.4
    assert resolve_win_rate(0.0, 0.9) == 0.0
    assert resolve_win_rate(None, 0.9) == 0.9
    assert resolve_win_rate(None, None) is None
