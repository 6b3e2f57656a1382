"""Threshold filtering, ranking and top-N selection of scored accounts."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from winscan.config import ScannerSettings
from winscan.metrics import resolve_win_rate
from winscan.models import (
    ScoredAccount,
    SelectionCriteria,
    SelectionResult,
    SelectionStats,
    SelectionSummary,
)

logger = logging.getLogger(__name__)


def criteria_from_settings(settings: ScannerSettings) -> SelectionCriteria:
    return SelectionCriteria(
        min_trades=settings.MIN_TRADES,
        min_volume=settings.MIN_VOLUME_USD,
        min_win_rate=settings.MIN_WIN_RATE,
        min_confidence=settings.MIN_CONFIDENCE,
        min_pnl=settings.MIN_PNL,
        top_n=settings.TOP_N,
    )


def summarize(selected: Sequence[ScoredAccount]) -> SelectionSummary:
    """Aggregate statistics over *selected*; an empty input yields all zeros."""
    if not selected:
        return SelectionSummary()

    win_rates = [
        resolve_win_rate(a.strict_win_rate, a.proxy_win_rate) or 0.0 for a in selected
    ]
    volumes = [a.total_volume_usd for a in selected]
    profitable = sum(1 for a in selected if a.realized_pnl > 0)

    return SelectionSummary(
        count=len(selected),
        avg_win_rate=float(np.mean(win_rates)),
        avg_volume=float(np.mean(volumes)),
        avg_score=float(np.mean([a.composite_score for a in selected])),
        avg_confidence=float(np.mean([a.confidence_score for a in selected])),
        total_volume=float(np.sum(volumes)),
        profitable_count=profitable,
        profitable_fraction=profitable / len(selected),
    )


class AccountSelector:
    """Filter scored accounts by thresholds, rank by score, cap to top N."""

    def __init__(self, criteria: SelectionCriteria | None = None) -> None:
        self._criteria = criteria or SelectionCriteria()

    @property
    def criteria(self) -> SelectionCriteria:
        return self._criteria

    def update_criteria(self, **changes: float) -> SelectionCriteria:
        """Replace individual thresholds; unknown names raise ``ValueError``."""
        unknown = set(changes) - set(SelectionCriteria.model_fields)
        if unknown:
            raise ValueError(f"Unknown selection criteria: {sorted(unknown)}")
        self._criteria = self._criteria.model_copy(update=changes)
        return self._criteria

    def passes_filters(self, account: ScoredAccount) -> bool:
        """All thresholds must hold; an account with no win-rate signal never passes."""
        c = self._criteria
        if account.total_trades < c.min_trades:
            return False
        if account.total_volume_usd < c.min_volume:
            return False
        win_rate = resolve_win_rate(account.strict_win_rate, account.proxy_win_rate)
        if win_rate is None or win_rate < c.min_win_rate:
            return False
        if account.confidence_score < c.min_confidence:
            return False
        return account.realized_pnl >= c.min_pnl

    def select(self, accounts: Sequence[ScoredAccount]) -> SelectionResult:
        passed = [a for a in accounts if self.passes_filters(a)]
        # sorted() is stable: equal scores keep input order.
        ranked = sorted(passed, key=lambda a: a.composite_score, reverse=True)
        selected = ranked[: max(self._criteria.top_n, 0)]

        logger.info(
            "Selection: input=%d passed=%d selected=%d",
            len(accounts),
            len(passed),
            len(selected),
        )
        return SelectionResult(
            selected=tuple(selected),
            summary=summarize(selected),
            stats=SelectionStats(
                total_input=len(accounts),
                passed_filters=len(passed),
                selected_count=len(selected),
                criteria_used=self._criteria,
            ),
        )
