"""Shared pytest fixtures and record factories for the winscan test suite."""

from __future__ import annotations

import time

import pytest

from winscan.models import (
    DerivedMetrics,
    RawActivity,
    RawClosedPosition,
    RawPosition,
    ScoreBreakdown,
    ScoredAccount,
)
from winscan.storage import Storage

NOW = int(time.time())


# ---------------------------------------------------------------------------
# Record factories
# ---------------------------------------------------------------------------


def make_closed(realized_pnl: float, resolved_at: int | None = None) -> RawClosedPosition:
    return RawClosedPosition(
        condition_id="0xcond",
        outcome="Yes",
        realized_pnl=realized_pnl,
        resolved_at=NOW - 3600 if resolved_at is None else resolved_at,
    )


def make_position(cash_pnl: float = 0.0, realized_pnl: float = 0.0) -> RawPosition:
    return RawPosition(
        condition_id="0xcond",
        outcome="Yes",
        size=100.0,
        avg_price=0.5,
        cash_pnl=cash_pnl,
        realized_pnl=realized_pnl,
        cur_price=0.55,
    )


def make_activity(usdc_size: float = 10.0, timestamp: int | None = None) -> RawActivity:
    return RawActivity(
        side="BUY",
        size=20.0,
        price=0.5,
        usdc_size=usdc_size,
        timestamp=NOW - 60 if timestamp is None else timestamp,
    )


def make_metrics(address: str = "0xabc", **overrides) -> DerivedMetrics:
    values = {
        "strict_win_rate": 0.7,
        "proxy_win_rate": 0.5,
        "confidence_score": 0.5,
        "total_trades": 120,
        "total_volume_usd": 25_000.0,
        "realized_pnl": 500.0,
        "closed_realized_pnl": 1_200.0,
        "win_count": 14,
        "loss_count": 6,
        "closed_positions_count": 20,
        "positions_count": 40,
    }
    values.update(overrides)
    return DerivedMetrics(address=address, **values)


def make_scored(address: str = "0xabc", composite_score: float = 0.6, **overrides) -> ScoredAccount:
    metrics = make_metrics(address, **overrides)
    return ScoredAccount(
        **metrics.model_dump(),
        composite_score=composite_score,
        reason_tags=("high_winrate",),
        score_breakdown=ScoreBreakdown(
            win_rate_contribution=0.35,
            volume_contribution=0.15,
            confidence_contribution=0.1,
        ),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def storage() -> Storage:
    """Provide a migrated in-memory store, closed after the test."""
    store = Storage(":memory:")
    yield store
    store.close()
