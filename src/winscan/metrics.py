"""Pure derivation of per-address performance metrics from raw API records."""

from __future__ import annotations

from collections.abc import Sequence

from winscan.models import DerivedMetrics, RawActivity, RawClosedPosition, RawPosition


def resolve_win_rate(strict: float | None, proxy: float | None) -> float | None:
    """Return the strict win rate when known, else the proxy, else ``None``."""
    if strict is not None:
        return strict
    return proxy


# ---------------------------------------------------------------------------
# Individual metrics
# ---------------------------------------------------------------------------


def count_outcomes(closed_positions: Sequence[RawClosedPosition]) -> tuple[int, int, int]:
    """Return ``(wins, losses, neutrals)`` by sign of realized PnL."""
    wins = losses = neutrals = 0
    for position in closed_positions:
        if position.realized_pnl > 0:
            wins += 1
        elif position.realized_pnl < 0:
            losses += 1
        else:
            neutrals += 1
    return wins, losses, neutrals


def strict_win_rate(wins: int, losses: int) -> float | None:
    decided = wins + losses
    if decided == 0:
        return None
    return wins / decided


def proxy_win_rate(positions: Sequence[RawPosition]) -> float | None:
    """Fraction of open positions currently in profit, or ``None`` if none are open."""
    if not positions:
        return None
    return sum(1 for p in positions if p.cash_pnl > 0) / len(positions)


def confidence_score(decided: int, open_positions: int) -> float:
    """Decided outcomes relative to currently open positions; ``0`` with none open."""
    if open_positions == 0:
        return 0.0
    return decided / open_positions


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


def compute_metrics(
    address: str,
    positions: Sequence[RawPosition],
    closed_positions: Sequence[RawClosedPosition],
    activity: Sequence[RawActivity],
    *,
    failed_sources: Sequence[str] = (),
    window_days: int | None = None,
    window_start: int | None = None,
    phase: str = "full",
) -> DerivedMetrics:
    """Build a :class:`DerivedMetrics` snapshot for one address.

    Missing sources are passed as empty sequences and listed in
    *failed_sources*.  ``realized_pnl`` is summed over open positions;
    the closed-position total is kept separately as ``closed_realized_pnl``.
    """
    wins, losses, neutrals = count_outcomes(closed_positions)

    return DerivedMetrics(
        address=address,
        strict_win_rate=strict_win_rate(wins, losses),
        proxy_win_rate=proxy_win_rate(positions),
        confidence_score=confidence_score(wins + losses, len(positions)),
        total_trades=len(activity),
        total_volume_usd=sum(a.usdc_size for a in activity),
        realized_pnl=sum(p.realized_pnl for p in positions),
        closed_realized_pnl=sum(p.realized_pnl for p in closed_positions),
        win_count=wins,
        loss_count=losses,
        neutral_count=neutrals,
        closed_positions_count=wins + losses,
        positions_count=len(positions),
        partial_success=bool(failed_sources),
        failed_sources=tuple(failed_sources),
        window_days=window_days,
        window_start=window_start,
        phase=phase,
    )
