"""Pydantic models for Polymarket data API records and scanner results.

Raw API models accept the camelCase field names the data API returns and
coerce missing or malformed numeric values to ``0`` so that downstream
aggregation never fails on a bad record.  Derived models (metrics, scored
accounts, selection results) are frozen: they are created once per run and
never mutated afterwards.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def to_float(value: Any) -> float:
    """Coerce an API numeric value to ``float``; anything unusable becomes ``0.0``."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(result) or math.isinf(result):
        return 0.0
    return result


def to_epoch_seconds(value: Any) -> int | None:
    """Normalise a timestamp to integer epoch seconds.

    Accepts epoch seconds, epoch milliseconds (anything above ``1e12``),
    numeric strings and ISO-8601 strings.  Returns ``None`` when the value
    is missing or cannot be interpreted.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            try:
                return int(datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp())
            except ValueError:
                return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number) or number <= 0:
        return None
    if number > 1e12:
        number /= 1000
    return int(number)


# ---------------------------------------------------------------------------
# Discovery feed - GET /trades
# ---------------------------------------------------------------------------


class TradeRecord(BaseModel):
    """A single record from the public trade feed; only the wallet is used."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    proxy_wallet: str | None = Field(default=None, alias="proxyWallet")
    side: str | None = None
    size: float = 0.0
    price: float = 0.0
    timestamp: int | None = None

    @field_validator("size", "price", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> float:
        return to_float(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> int | None:
        return to_epoch_seconds(value)


# ---------------------------------------------------------------------------
# Open positions - GET /positions
# ---------------------------------------------------------------------------


class RawPosition(BaseModel):
    """An open position held by an address."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    address: str | None = Field(default=None, alias="proxyWallet")
    condition_id: str = Field(default="", alias="conditionId")
    outcome: str | None = None
    size: float = 0.0
    avg_price: float = Field(default=0.0, alias="avgPrice")
    cash_pnl: float = Field(default=0.0, alias="cashPnl")
    realized_pnl: float = Field(default=0.0, alias="realizedPnl")
    cur_price: float = Field(default=0.0, alias="curPrice")

    @field_validator("size", "avg_price", "cash_pnl", "realized_pnl", "cur_price", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> float:
        return to_float(value)

    @field_validator("condition_id", mode="before")
    @classmethod
    def _condition_id(cls, value: Any) -> str:
        return "" if value is None else str(value)


# ---------------------------------------------------------------------------
# Closed positions - GET /closed-positions
# ---------------------------------------------------------------------------


class RawClosedPosition(BaseModel):
    """A settled position; the sign of ``realized_pnl`` decides win/loss/neutral."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    address: str | None = Field(default=None, alias="proxyWallet")
    condition_id: str = Field(default="", alias="conditionId")
    outcome: str | None = None
    realized_pnl: float = Field(default=0.0, alias="realizedPnl")
    resolved_at: int | None = Field(default=None, alias="resolvedAt")

    @model_validator(mode="before")
    @classmethod
    def _fallback_timestamp(cls, data: Any) -> Any:
        # Older payloads carry only ``timestamp``.
        if isinstance(data, dict) and not data.get("resolvedAt") and not data.get("resolved_at"):
            if data.get("timestamp"):
                data = {**data, "resolvedAt": data["timestamp"]}
        return data

    @field_validator("realized_pnl", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> float:
        return to_float(value)

    @field_validator("resolved_at", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> int | None:
        return to_epoch_seconds(value)

    @field_validator("condition_id", mode="before")
    @classmethod
    def _condition_id(cls, value: Any) -> str:
        return "" if value is None else str(value)


# ---------------------------------------------------------------------------
# Activity - GET /activity
# ---------------------------------------------------------------------------


class RawActivity(BaseModel):
    """A single trade/transaction event used for volume and trade counts."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    address: str | None = Field(default=None, alias="proxyWallet")
    side: str | None = None
    size: float = 0.0
    price: float = 0.0
    usdc_size: float = Field(default=0.0, alias="usdcSize")
    timestamp: int | None = None

    @field_validator("size", "price", "usdc_size", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> float:
        return to_float(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> int | None:
        return to_epoch_seconds(value)


# ---------------------------------------------------------------------------
# Derived metrics and scoring
# ---------------------------------------------------------------------------


class DerivedMetrics(BaseModel):
    """Per-address performance snapshot produced by the metrics calculator.

    ``strict_win_rate`` is ``None`` exactly when ``win_count + loss_count``
    is zero.  ``realized_pnl`` is summed over *open* positions;
    ``closed_realized_pnl`` is the settled counterpart used for screening.
    """

    model_config = ConfigDict(frozen=True)

    address: str
    strict_win_rate: float | None = None
    proxy_win_rate: float | None = None
    confidence_score: float = 0.0
    total_trades: int = 0
    total_volume_usd: float = 0.0
    realized_pnl: float = 0.0
    closed_realized_pnl: float = 0.0
    win_count: int = 0
    loss_count: int = 0
    neutral_count: int = 0
    closed_positions_count: int = 0
    positions_count: int = 0
    partial_success: bool = False
    failed_sources: tuple[str, ...] = ()
    window_days: int | None = None
    window_start: int | None = None
    phase: str = "full"


class ScoreBreakdown(BaseModel):
    """Per-term contributions to the composite score (unrounded)."""

    model_config = ConfigDict(frozen=True)

    win_rate_contribution: float
    volume_contribution: float
    confidence_contribution: float


class ScoredAccount(DerivedMetrics):
    """Derived metrics plus composite score, reason tags and breakdown."""

    composite_score: float
    reason_tags: tuple[str, ...] = ()
    score_breakdown: ScoreBreakdown


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class SelectionCriteria(BaseModel):
    """Threshold filters and cap applied by the selector."""

    model_config = ConfigDict(frozen=True)

    min_trades: int = 10
    min_volume: float = 100
    min_win_rate: float = 0.8
    min_confidence: float = 0.1
    min_pnl: float = 0
    top_n: int = 100


class SelectionSummary(BaseModel):
    """Aggregate statistics over the selected accounts; all zero when empty."""

    model_config = ConfigDict(frozen=True)

    count: int = 0
    avg_win_rate: float = 0.0
    avg_volume: float = 0.0
    avg_score: float = 0.0
    avg_confidence: float = 0.0
    total_volume: float = 0.0
    profitable_count: int = 0
    profitable_fraction: float = 0.0


class SelectionStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_input: int
    passed_filters: int
    selected_count: int
    criteria_used: SelectionCriteria


class SelectionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    selected: tuple[ScoredAccount, ...] = ()
    summary: SelectionSummary = SelectionSummary()
    stats: SelectionStats


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CollectionError(BaseModel):
    """A per-address failure recorded during a run; never fails the run itself."""

    model_config = ConfigDict(frozen=True)

    address: str
    type: str
    message: str


class ErrorSample(BaseModel):
    type: str
    count: int
    samples: list[dict[str, str]] = Field(default_factory=list)


class ErrorSummary(BaseModel):
    """Per-type grouping of collection errors for run stats and reports."""

    has_errors: bool = False
    error_count: int = 0
    errors_by_type: dict[str, int] = Field(default_factory=dict)
    sample_errors: list[ErrorSample] = Field(default_factory=list)
