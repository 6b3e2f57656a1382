"""Sync run orchestration: discovery, two-phase collection, scoring, storage.

One call to :func:`run_sync` is one tracked run.  Per-address failures are
recorded as error entries and summarised in the run stats; only an exception
escaping the pipeline itself (discovery unreachable, run deadline exceeded,
cancellation) marks the run ``failed``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from winscan.collector import Collector
from winscan.config import ScannerSettings
from winscan.data_client import DataAPIClient
from winscan.models import CollectionError, ScoredAccount, SelectionResult
from winscan.scoring import AccountScorer
from winscan.selection import AccountSelector, criteria_from_settings
from winscan.storage import Storage, generate_error_summary

log = structlog.get_logger()

# Error types that mean an address produced no usable output.
_FATAL_ERROR_TYPES = frozenset({"phase1_failure", "storage_failure"})


@dataclass
class SyncOutcome:
    """Everything a completed run produced."""

    run_id: str
    scored: list[ScoredAccount]
    selection: SelectionResult
    errors: list[CollectionError] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)


def load_seed_file(path: str | Path) -> list[str]:
    """Read addresses from a text file: one per line, lines not starting with ``0x`` ignored."""
    addresses = []
    for line in Path(path).read_text().splitlines():
        line = line.strip()
        if line.startswith("0x"):
            addresses.append(line)
    return addresses


def run_config(settings: ScannerSettings) -> dict[str, Any]:
    """The subset of settings recorded with each run."""
    return {
        "min_trades": settings.MIN_TRADES,
        "min_volume_usd": settings.MIN_VOLUME_USD,
        "min_win_rate": settings.MIN_WIN_RATE,
        "min_confidence": settings.MIN_CONFIDENCE,
        "min_pnl": settings.MIN_PNL,
        "top_n": settings.TOP_N,
        "discover_trades": settings.DISCOVER_TRADES,
        "window_days": settings.WINDOW_DAYS,
        "max_activity_pages": settings.MAX_ACTIVITY_PAGES,
        "concurrency": settings.CONCURRENCY,
        "run_timeout_seconds": settings.RUN_TIMEOUT_SECONDS,
        "weights": {
            "win_rate": settings.WIN_RATE_WEIGHT,
            "volume": settings.VOLUME_WEIGHT,
            "confidence": settings.CONFIDENCE_WEIGHT,
        },
    }


async def _gather_addresses(
    collector: Collector,
    storage: Storage,
    settings: ScannerSettings,
    seed_file: str | Path | None,
) -> tuple[list[str], set[str]]:
    """Seeds first (storage, then file), followed by newly discovered wallets."""
    seeds = storage.load_seed_addresses()
    if seed_file is not None:
        seeds.extend(load_seed_file(seed_file))
    seeds = list(dict.fromkeys(seeds))
    seed_set = set(seeds)
    log.info("seeds_loaded", count=len(seeds))

    discovered: set[str] = set()
    if settings.DISCOVER_TRADES > 0:
        discovered = await collector.discover_addresses(settings.DISCOVER_TRADES)
        log.info("addresses_discovered", count=len(discovered))
    elif not seeds:
        log.warning("no_addresses", reason="no seeds and discovery disabled")

    return seeds + sorted(discovered - seed_set), seed_set


async def run_sync(
    settings: ScannerSettings,
    client: DataAPIClient,
    storage: Storage,
    *,
    seed_file: str | Path | None = None,
) -> SyncOutcome:
    """Execute one tracked sync run.

    Raises
    ------
    Exception
        Any pipeline-level failure, after the run has been marked failed.
    """
    config = run_config(settings)
    run_id = storage.create_run(config)
    structlog.contextvars.bind_contextvars(run_id=run_id)
    try:
        return await _execute(run_id, config, settings, client, storage, seed_file)
    except (Exception, asyncio.CancelledError) as exc:
        message = str(exc) or type(exc).__name__
        log.error("sync_failed", error=message, error_type=type(exc).__name__)
        storage.fail_run(run_id, message)
        raise
    finally:
        structlog.contextvars.unbind_contextvars("run_id")


async def _execute(
    run_id: str,
    config: dict[str, Any],
    settings: ScannerSettings,
    client: DataAPIClient,
    storage: Storage,
    seed_file: str | Path | None,
) -> SyncOutcome:
    start = time.monotonic()
    collector = Collector.from_settings(client, settings)
    log.info("sync_started", **{k: v for k, v in config.items() if k != "weights"})

    async with asyncio.timeout(settings.RUN_TIMEOUT_SECONDS):
        addresses, seed_set = await _gather_addresses(collector, storage, settings, seed_file)
        collection = await collector.collect(addresses, settings.MIN_WIN_RATE, settings.MIN_PNL)

    log.info(
        "collection_complete",
        candidates=collection.candidates,
        passed_screen=collection.passed_screen,
        enriched=collection.enriched,
        partial=collection.partial,
        errors=len(collection.errors),
    )

    scored = AccountScorer.from_settings(settings).score_batch(collection.metrics)
    selection = AccountSelector(criteria_from_settings(settings)).select(scored)
    log.info(
        "selection_complete",
        scored=len(scored),
        passed_filters=selection.stats.passed_filters,
        selected=selection.stats.selected_count,
    )

    errors = list(collection.errors)
    stored: set[str] = set()
    new_accounts = 0
    for account in scored:
        method = "seed_list" if account.address in seed_set else "trades_stream"
        try:
            result = storage.upsert_account(run_id, account, discovery_method=method)
            storage.create_metrics_snapshot(run_id, account)
        except Exception as exc:
            log.warning("storage_failure", address=account.address, error=str(exc))
            errors.append(
                CollectionError(address=account.address, type="storage_failure", message=str(exc))
            )
            continue
        stored.add(account.address)
        if result.is_new:
            new_accounts += 1

    # selected_accounts references accounts; skip rows whose upsert failed.
    storage.record_selected_accounts(
        run_id, [a for a in selection.selected if a.address in stored]
    )

    failed = {e.address for e in errors if e.type in _FATAL_ERROR_TYPES}
    stats = {
        "accounts_processed": collection.candidates,
        "accounts_scored": len(scored),
        "accounts_selected": selection.stats.selected_count,
        "accounts_failed": len(failed),
        "accounts_partial": collection.partial,
        "phase1_candidates": collection.candidates,
        "phase1_passed": collection.passed_screen,
        "phase2_enriched": collection.enriched,
        "new_accounts": new_accounts,
        "updated_accounts": len(stored) - new_accounts,
        "api_requests": getattr(client, "request_count", None),
        "duration_seconds": round(time.monotonic() - start, 3),
        "selection_summary": selection.summary.model_dump(),
        "selection_stats": selection.stats.model_dump(),
        "error_summary": generate_error_summary(errors).model_dump(),
        "config_used": config,
    }
    storage.complete_run(run_id, stats)
    log.info(
        "sync_complete",
        selected=stats["accounts_selected"],
        failed=stats["accounts_failed"],
        duration_seconds=stats["duration_seconds"],
    )
    return SyncOutcome(
        run_id=run_id, scored=scored, selection=selection, errors=errors, stats=stats
    )
