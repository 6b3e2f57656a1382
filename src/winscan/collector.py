"""Two-phase account collection against the Polymarket data API.

Phase 1 (screen) fetches closed positions only, the cheapest signal, and
drops addresses below the run's win-rate / PnL thresholds.  Phase 2
(enrich) fetches open positions and paginated activity concurrently for the
survivors and recomputes full metrics.

Per-address failures never abort a batch: they are recorded as
:class:`~winscan.models.CollectionError` entries.  A Phase 2 failure keeps
the Phase 1 metrics as a degraded fallback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from typing import Any

from winscan.config import MAX_TRADES_PAGE_SIZE, ScannerSettings
from winscan.data_client import DataAPIClient
from winscan.metrics import compute_metrics
from winscan.models import CollectionError, DerivedMetrics, RawActivity, RawClosedPosition

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86_400
_PHASE_TWO_SOURCES = ("positions", "activity")


class PhaseTwoError(Exception):
    """Raised when every Phase 2 source failed for an address."""

    def __init__(self, address: str, failures: dict[str, BaseException]) -> None:
        self.address = address
        self.failures = failures
        detail = "; ".join(f"{name}: {exc}" for name, exc in failures.items())
        super().__init__(f"all phase 2 sources failed for {address}: {detail}")


@dataclass
class CollectionResult:
    """Outcome of a two-phase collection batch."""

    metrics: list[DerivedMetrics] = field(default_factory=list)
    errors: list[CollectionError] = field(default_factory=list)
    candidates: int = 0
    screened: int = 0
    passed_screen: int = 0
    enriched: int = 0
    partial: int = 0
    duration_seconds: float = 0.0


def passes_screen(metrics: DerivedMetrics, min_win_rate: float, min_pnl: float) -> bool:
    """Phase 1 threshold: strict win rate (unknown counts as 0) and settled PnL."""
    win_rate = metrics.strict_win_rate if metrics.strict_win_rate is not None else 0.0
    return win_rate >= min_win_rate and metrics.closed_realized_pnl >= min_pnl


class Collector:
    """Orchestrates throttled, retried fetches per address.

    Parameters
    ----------
    client:
        A :class:`DataAPIClient` (or any object with the same fetch methods).
    window_days:
        Look-back window for closed positions and activity.
    max_activity_pages:
        Hard cap on activity pages requested per address.
    min_trades_for_stop, min_volume_for_stop:
        Early-stop thresholds for activity pagination.
    concurrency:
        Number of addresses evaluated at once.  Throttles are shared, so the
        aggregate request rate does not grow with this value.
    """

    def __init__(
        self,
        client: DataAPIClient,
        window_days: int = 90,
        max_activity_pages: int = 5,
        activity_page_size: int = 500,
        min_trades_for_stop: int = 200,
        min_volume_for_stop: float = 10_000,
        concurrency: int = 1,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.client = client
        self.window_days = window_days
        self.max_activity_pages = max_activity_pages
        self.activity_page_size = activity_page_size
        self.min_trades_for_stop = min_trades_for_stop
        self.min_volume_for_stop = min_volume_for_stop
        self.concurrency = concurrency

    @classmethod
    def from_settings(cls, client: DataAPIClient, settings: ScannerSettings) -> Collector:
        return cls(
            client,
            window_days=settings.WINDOW_DAYS,
            max_activity_pages=settings.MAX_ACTIVITY_PAGES,
            activity_page_size=settings.ACTIVITY_PAGE_SIZE,
            min_trades_for_stop=settings.MIN_TRADES_FOR_STOP,
            min_volume_for_stop=settings.MIN_VOLUME_FOR_STOP,
            concurrency=settings.CONCURRENCY,
        )

    def window_start(self, now: float | None = None) -> int:
        """Epoch seconds of the look-back window's lower bound."""
        if now is None:
            now = time.time()
        return int(now) - self.window_days * _SECONDS_PER_DAY

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover_addresses(self, count: int) -> set[str]:
        """Scan up to *count* recent trades and return the distinct wallets seen."""
        addresses: set[str] = set()
        scanned = 0
        while scanned < count:
            limit = min(MAX_TRADES_PAGE_SIZE, count - scanned)
            page = await self.client.fetch_trades(limit=limit, offset=scanned)
            if not page:
                break
            scanned += len(page)
            addresses.update(t.proxy_wallet for t in page if t.proxy_wallet)
            if len(page) < limit:
                break

        logger.info("Discovered %d addresses from %d trades", len(addresses), scanned)
        return addresses

    # ------------------------------------------------------------------
    # Raw sources
    # ------------------------------------------------------------------

    async def fetch_closed_positions(self, address: str, after: int) -> list[RawClosedPosition]:
        """Closed positions resolved inside the window; undated records are dropped."""
        closed = await self.client.fetch_closed_positions(address)
        in_window = [p for p in closed if p.resolved_at is not None and p.resolved_at >= after]
        logger.debug(
            "Closed positions for %s: %d in window (of %d)", address, len(in_window), len(closed)
        )
        return in_window

    async def fetch_all_activity(self, address: str, after: int) -> list[RawActivity]:
        """Page backwards through activity until a stop condition is met.

        Stops at the page cap, an empty page, a page without timestamps,
        the window lower bound, or once accumulated trades/volume reach the
        early-stop thresholds.  Undated records are kept.
        """
        records: list[RawActivity] = []
        before: int | None = None
        trades = 0
        volume = 0.0

        for page_number in range(self.max_activity_pages):
            page = await self.client.fetch_activity(
                address, after=after, before=before, limit=self.activity_page_size
            )
            if not page:
                break

            records.extend(page)
            trades += len(page)
            volume += sum(a.usdc_size for a in page)
            logger.debug(
                "Activity page %d for %s: %d records, total=%d volume=%.2f",
                page_number + 1,
                address,
                len(page),
                trades,
                volume,
            )

            if trades >= self.min_trades_for_stop:
                logger.info("Early stop for %s: trades=%d >= %d", address, trades, self.min_trades_for_stop)
                break
            if volume >= self.min_volume_for_stop:
                logger.info(
                    "Early stop for %s: volume=%.2f >= %.2f", address, volume, self.min_volume_for_stop
                )
                break

            timestamps = [a.timestamp for a in page if a.timestamp]
            if not timestamps:
                break
            earliest = min(timestamps)
            if earliest <= after:
                break
            before = earliest

        return [a for a in records if a.timestamp is None or a.timestamp >= after]

    async def _settle(
        self, sources: dict[str, Awaitable[list[Any]]]
    ) -> tuple[dict[str, list[Any]], dict[str, Exception]]:
        """Await every source; failures become empty results plus an entry in the failure map."""
        names = list(sources)
        outcomes = await asyncio.gather(*sources.values(), return_exceptions=True)

        results: dict[str, list[Any]] = {}
        failures: dict[str, Exception] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, Exception):
                failures[name] = outcome
                results[name] = []
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[name] = outcome
        return results, failures

    # ------------------------------------------------------------------
    # Single-shot and two-phase evaluation
    # ------------------------------------------------------------------

    async def fetch_account_metrics(self, address: str) -> DerivedMetrics:
        """Fetch all three sources concurrently and compute full metrics.

        A failing source is treated as empty and listed in ``failed_sources``.
        """
        after = self.window_start()
        results, failures = await self._settle(
            {
                "positions": self.client.fetch_positions(address),
                "closed_positions": self.fetch_closed_positions(address, after),
                "activity": self.fetch_all_activity(address, after),
            }
        )
        for name, exc in failures.items():
            logger.warning("Source %s failed for %s: %s", name, address, exc)

        return compute_metrics(
            address,
            results["positions"],
            results["closed_positions"],
            results["activity"],
            failed_sources=tuple(failures),
            window_days=self.window_days,
            window_start=after,
            phase="full",
        )

    async def screen(
        self, address: str, after: int | None = None
    ) -> tuple[DerivedMetrics, list[RawClosedPosition]]:
        """Phase 1: closed positions only.  Returns the metrics and the raw records."""
        if after is None:
            after = self.window_start()
        closed = await self.fetch_closed_positions(address, after)
        metrics = compute_metrics(
            address,
            [],
            closed,
            [],
            window_days=self.window_days,
            window_start=after,
            phase="screen",
        )
        return metrics, closed

    async def enrich(
        self,
        address: str,
        closed_positions: list[RawClosedPosition],
        after: int | None = None,
    ) -> DerivedMetrics:
        """Phase 2: open positions and activity, merged with Phase 1 closed positions.

        Raises
        ------
        PhaseTwoError
            If every Phase 2 source failed.
        """
        if after is None:
            after = self.window_start()
        results, failures = await self._settle(
            {
                "positions": self.client.fetch_positions(address),
                "activity": self.fetch_all_activity(address, after),
            }
        )
        if len(failures) == len(results):
            raise PhaseTwoError(address, failures)
        for name, exc in failures.items():
            logger.warning("Phase 2 source %s failed for %s: %s", name, address, exc)

        return compute_metrics(
            address,
            results["positions"],
            closed_positions,
            results["activity"],
            failed_sources=tuple(failures),
            window_days=self.window_days,
            window_start=after,
            phase="enriched",
        )

    async def _evaluate(
        self,
        address: str,
        after: int,
        min_win_rate: float,
        min_pnl: float,
        result: CollectionResult,
    ) -> DerivedMetrics | None:
        try:
            screened, closed = await self.screen(address, after)
        except Exception as exc:
            logger.warning("Phase 1 failed for %s: %s", address, exc)
            result.errors.append(
                CollectionError(address=address, type="phase1_failure", message=str(exc))
            )
            return None
        result.screened += 1

        if not passes_screen(screened, min_win_rate, min_pnl):
            logger.debug(
                "Screened out %s: win_rate=%s closed_pnl=%.2f",
                address,
                screened.strict_win_rate,
                screened.closed_realized_pnl,
            )
            return None
        result.passed_screen += 1

        try:
            enriched = await self.enrich(address, closed, after)
        except Exception as exc:
            logger.warning("Phase 2 failed for %s, keeping phase 1 metrics: %s", address, exc)
            result.errors.append(
                CollectionError(address=address, type="phase2_failure", message=str(exc))
            )
            result.partial += 1
            return screened.model_copy(
                update={"partial_success": True, "failed_sources": _PHASE_TWO_SOURCES}
            )

        result.enriched += 1
        if enriched.partial_success:
            result.partial += 1
        return enriched

    async def collect(
        self,
        addresses: Iterable[str],
        min_win_rate: float,
        min_pnl: float,
    ) -> CollectionResult:
        """Screen then enrich every address; metrics keep the input order."""
        candidates = list(addresses)
        result = CollectionResult(candidates=len(candidates))
        if not candidates:
            return result

        start = time.monotonic()
        after = self.window_start()
        semaphore = asyncio.Semaphore(self.concurrency)
        slots: list[DerivedMetrics | None] = [None] * len(candidates)
        done = 0

        logger.info(
            "Collecting %d addresses (window=%dd, concurrency=%d)",
            len(candidates),
            self.window_days,
            self.concurrency,
        )

        async def worker(index: int, address: str) -> None:
            nonlocal done
            async with semaphore:
                slots[index] = await self._evaluate(address, after, min_win_rate, min_pnl, result)
            done += 1
            if done % 10 == 0 or done == len(candidates):
                logger.info("Evaluated %d/%d addresses", done, len(candidates))

        await asyncio.gather(*(worker(i, a) for i, a in enumerate(candidates)))

        result.metrics = [m for m in slots if m is not None]
        result.duration_seconds = time.monotonic() - start
        logger.info(
            "Collection complete: candidates=%d passed_screen=%d enriched=%d errors=%d (%.1fs)",
            result.candidates,
            result.passed_screen,
            result.enriched,
            len(result.errors),
            result.duration_seconds,
        )
        return result
