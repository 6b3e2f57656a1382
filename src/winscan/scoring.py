"""Composite scoring and reason tags for derived account metrics.

compositeScore = w_wr * effective_win_rate
               + w_vol * normalize_volume(total_volume_usd)
               + w_conf * confidence_score

Default weights are 0.5 / 0.3 / 0.2.  Weights are not required to sum to 1.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from winscan.config import (
    ACTIVE_TRADER_TRADES,
    CONSISTENT_MIN_CLOSED,
    CONSISTENT_WINRATE,
    HIGH_CONFIDENCE,
    HIGH_VOLUME,
    HIGH_WINRATE,
    MEDIUM_CONFIDENCE,
    MEDIUM_VOLUME,
    MEDIUM_WINRATE,
    REGULAR_TRADER_TRADES,
    VOLUME_NORMALIZATION_CAP,
    ScannerSettings,
)
from winscan.metrics import resolve_win_rate
from winscan.models import DerivedMetrics, ScoreBreakdown, ScoredAccount

_VOLUME_LOG_CAP = math.log10(VOLUME_NORMALIZATION_CAP + 1)


def normalize_volume(volume: float) -> float:
    """Log-scale volume into [0, 1], saturating at $1,000,000."""
    if volume <= 0:
        return 0.0
    return min(math.log10(volume + 1) / _VOLUME_LOG_CAP, 1.0)


# ---------------------------------------------------------------------------
# Reason tags
# ---------------------------------------------------------------------------


def determine_reason_tags(metrics: DerivedMetrics) -> tuple[str, ...]:
    """Qualitative labels, evaluated in a fixed order.

    Win-rate tags use the strict win rate only; an unknown rate earns none.
    """
    tags: list[str] = []
    win_rate = metrics.strict_win_rate

    if win_rate is not None:
        if win_rate >= HIGH_WINRATE:
            tags.append("high_winrate")
        elif win_rate >= MEDIUM_WINRATE:
            tags.append("medium_winrate")

    if metrics.total_volume_usd >= HIGH_VOLUME:
        tags.append("high_volume")
    elif metrics.total_volume_usd >= MEDIUM_VOLUME:
        tags.append("medium_volume")

    if metrics.confidence_score >= HIGH_CONFIDENCE:
        tags.append("high_confidence")
    elif metrics.confidence_score >= MEDIUM_CONFIDENCE:
        tags.append("medium_confidence")

    if metrics.total_trades >= ACTIVE_TRADER_TRADES:
        tags.append("active_trader")
    elif metrics.total_trades >= REGULAR_TRADER_TRADES:
        tags.append("regular_trader")

    if metrics.realized_pnl > 0:
        tags.append("profitable")
    elif metrics.realized_pnl < 0:
        tags.append("loss_making")

    if (
        win_rate is not None
        and win_rate >= CONSISTENT_WINRATE
        and metrics.closed_positions_count >= CONSISTENT_MIN_CLOSED
    ):
        tags.append("consistent_winner")

    return tuple(tags)


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------


class AccountScorer:
    """Deterministic ``DerivedMetrics -> ScoredAccount`` transformation."""

    def __init__(
        self,
        win_rate_weight: float = 0.5,
        volume_weight: float = 0.3,
        confidence_weight: float = 0.2,
    ) -> None:
        self.win_rate_weight = win_rate_weight
        self.volume_weight = volume_weight
        self.confidence_weight = confidence_weight

    @classmethod
    def from_settings(cls, settings: ScannerSettings) -> AccountScorer:
        return cls(
            win_rate_weight=settings.WIN_RATE_WEIGHT,
            volume_weight=settings.VOLUME_WEIGHT,
            confidence_weight=settings.CONFIDENCE_WEIGHT,
        )

    @property
    def weights(self) -> dict[str, float]:
        return {
            "win_rate": self.win_rate_weight,
            "volume": self.volume_weight,
            "confidence": self.confidence_weight,
        }

    def breakdown(self, metrics: DerivedMetrics) -> ScoreBreakdown:
        effective = resolve_win_rate(metrics.strict_win_rate, metrics.proxy_win_rate)
        return ScoreBreakdown(
            win_rate_contribution=self.win_rate_weight * (effective or 0.0),
            volume_contribution=self.volume_weight * normalize_volume(metrics.total_volume_usd),
            confidence_contribution=self.confidence_weight * metrics.confidence_score,
        )

    def score(self, metrics: DerivedMetrics) -> ScoredAccount:
        """Score one account; the composite is rounded to 4 decimals."""
        breakdown = self.breakdown(metrics)
        composite = (
            breakdown.win_rate_contribution
            + breakdown.volume_contribution
            + breakdown.confidence_contribution
        )
        return ScoredAccount(
            **metrics.model_dump(),
            composite_score=round(composite, 4),
            reason_tags=determine_reason_tags(metrics),
            score_breakdown=breakdown,
        )

    def score_batch(self, batch: Iterable[DerivedMetrics]) -> list[ScoredAccount]:
        return [self.score(m) for m in batch]
