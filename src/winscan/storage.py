"""SQLite storage for sync runs, account metrics and selections.

All methods are synchronous and use parameterized queries.  Each account's
upsert and snapshot is its own transaction so one failure does not block the
others; the selected-account list is written in a single transaction.

Usage::

    with Storage("data/winscan.db") as storage:
        run_id = storage.create_run({"min_trades": 50})
        storage.upsert_account(run_id, scored)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from winscan.database import init_db
from winscan.models import CollectionError, ErrorSample, ErrorSummary, ScoredAccount

logger = logging.getLogger(__name__)

_MAX_SAMPLES_PER_TYPE = 5
_NOW = "strftime('%Y-%m-%dT%H:%M:%SZ', 'now')"


@dataclass
class UpsertResult:
    address: str
    is_new: bool


def generate_error_summary(errors: Iterable[CollectionError]) -> ErrorSummary:
    """Group errors by type with up to five ``{address, message}`` samples each."""
    grouped: dict[str, list[CollectionError]] = {}
    for error in errors:
        grouped.setdefault(error.type or "unknown", []).append(error)

    if not grouped:
        return ErrorSummary()

    return ErrorSummary(
        has_errors=True,
        error_count=sum(len(v) for v in grouped.values()),
        errors_by_type={t: len(v) for t, v in grouped.items()},
        sample_errors=[
            ErrorSample(
                type=t,
                count=len(v),
                samples=[
                    {"address": e.address, "message": e.message}
                    for e in v[:_MAX_SAMPLES_PER_TYPE]
                ],
            )
            for t, v in grouped.items()
        ],
    )


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


class Storage:
    """Synchronous SQLite-backed store for scanner runs."""

    def __init__(self, db_path: str = "data/winscan.db") -> None:
        self.db_path = db_path
        self._conn = init_db(db_path)

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> Storage:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def create_run(self, config: dict[str, Any]) -> str:
        run_id = str(uuid.uuid4())
        with self._conn:
            self._conn.execute(
                "INSERT INTO runs (id, status, config) VALUES (?, 'running', ?)",
                (run_id, json.dumps(config, default=str)),
            )
        logger.info("Created run %s", run_id)
        return run_id

    def complete_run(self, run_id: str, stats: dict[str, Any]) -> None:
        with self._conn:
            self._conn.execute(
                f"UPDATE runs SET status = 'completed', completed_at = {_NOW}, stats = ? "
                "WHERE id = ?",
                (json.dumps(stats, default=str), run_id),
            )
        logger.info("Completed run %s", run_id)

    def fail_run(self, run_id: str, message: str) -> None:
        with self._conn:
            self._conn.execute(
                f"UPDATE runs SET status = 'failed', completed_at = {_NOW}, error_message = ? "
                "WHERE id = ?",
                (message, run_id),
            )
        logger.error("Run %s failed: %s", run_id, message)

    # ------------------------------------------------------------------
    # Accounts and snapshots
    # ------------------------------------------------------------------

    def upsert_account(
        self,
        run_id: str,
        account: ScoredAccount,
        discovery_method: str = "trades_stream",
    ) -> UpsertResult:
        """Insert or update the account's latest metrics."""
        with self._conn:
            existing = self._conn.execute(
                "SELECT 1 FROM accounts WHERE address = ?", (account.address,)
            ).fetchone()
            self._conn.execute(
                f"""
                INSERT INTO accounts (
                    address, last_sync_run_id, total_trades, total_volume_usd,
                    total_positions, closed_positions, win_count, loss_count,
                    neutral_count, strict_win_rate, proxy_win_rate, realized_pnl,
                    closed_realized_pnl, confidence_score, composite_score,
                    discovery_method
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (address) DO UPDATE SET
                    last_seen_at = {_NOW},
                    last_sync_run_id = excluded.last_sync_run_id,
                    total_trades = excluded.total_trades,
                    total_volume_usd = excluded.total_volume_usd,
                    total_positions = excluded.total_positions,
                    closed_positions = excluded.closed_positions,
                    win_count = excluded.win_count,
                    loss_count = excluded.loss_count,
                    neutral_count = excluded.neutral_count,
                    strict_win_rate = excluded.strict_win_rate,
                    proxy_win_rate = excluded.proxy_win_rate,
                    realized_pnl = excluded.realized_pnl,
                    closed_realized_pnl = excluded.closed_realized_pnl,
                    confidence_score = excluded.confidence_score,
                    composite_score = excluded.composite_score,
                    updated_at = {_NOW}
                """,
                (
                    account.address,
                    run_id,
                    account.total_trades,
                    account.total_volume_usd,
                    account.positions_count,
                    account.closed_positions_count,
                    account.win_count,
                    account.loss_count,
                    account.neutral_count,
                    account.strict_win_rate,
                    account.proxy_win_rate,
                    account.realized_pnl,
                    account.closed_realized_pnl,
                    account.confidence_score,
                    account.composite_score,
                    discovery_method,
                ),
            )
        return UpsertResult(address=account.address, is_new=existing is None)

    def create_metrics_snapshot(self, run_id: str, account: ScoredAccount) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO account_metrics_snapshot (
                    run_id, address, strict_win_rate, proxy_win_rate, total_trades,
                    total_volume_usd, realized_pnl, win_count, loss_count,
                    closed_positions, confidence_score, score, positions_count,
                    activity_count, neutral_count, closed_realized_pnl, reason_tags,
                    score_breakdown, partial_success, failed_sources, phase
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (run_id, address) DO UPDATE SET
                    strict_win_rate = excluded.strict_win_rate,
                    proxy_win_rate = excluded.proxy_win_rate,
                    total_trades = excluded.total_trades,
                    total_volume_usd = excluded.total_volume_usd,
                    realized_pnl = excluded.realized_pnl,
                    win_count = excluded.win_count,
                    loss_count = excluded.loss_count,
                    closed_positions = excluded.closed_positions,
                    confidence_score = excluded.confidence_score,
                    score = excluded.score,
                    positions_count = excluded.positions_count,
                    activity_count = excluded.activity_count,
                    neutral_count = excluded.neutral_count,
                    closed_realized_pnl = excluded.closed_realized_pnl,
                    reason_tags = excluded.reason_tags,
                    score_breakdown = excluded.score_breakdown,
                    partial_success = excluded.partial_success,
                    failed_sources = excluded.failed_sources,
                    phase = excluded.phase
                """,
                (
                    run_id,
                    account.address,
                    account.strict_win_rate,
                    account.proxy_win_rate,
                    account.total_trades,
                    account.total_volume_usd,
                    account.realized_pnl,
                    account.win_count,
                    account.loss_count,
                    account.closed_positions_count,
                    account.confidence_score,
                    account.composite_score,
                    account.positions_count,
                    account.total_trades,
                    account.neutral_count,
                    account.closed_realized_pnl,
                    json.dumps(list(account.reason_tags)),
                    account.score_breakdown.model_dump_json(),
                    int(account.partial_success),
                    json.dumps(list(account.failed_sources)),
                    account.phase,
                ),
            )

    def record_selected_accounts(self, run_id: str, selected: Sequence[ScoredAccount]) -> None:
        """Write the ranked selection for *run_id* in one transaction."""
        rows = [
            (
                run_id,
                account.address,
                rank,
                json.dumps(list(account.reason_tags)),
                account.composite_score,
                account.strict_win_rate,
                account.total_trades,
                account.total_volume_usd,
                account.realized_pnl,
            )
            for rank, account in enumerate(selected, start=1)
        ]
        with self._conn:
            self._conn.executemany(
                """
                INSERT INTO selected_accounts (
                    run_id, address, rank, reason_tags, selection_score,
                    strict_win_rate, total_trades, total_volume_usd, realized_pnl
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (run_id, address) DO UPDATE SET
                    rank = excluded.rank,
                    reason_tags = excluded.reason_tags,
                    selection_score = excluded.selection_score,
                    strict_win_rate = excluded.strict_win_rate,
                    total_trades = excluded.total_trades,
                    total_volume_usd = excluded.total_volume_usd,
                    realized_pnl = excluded.realized_pnl
                """,
                rows,
            )
        logger.info("Recorded %d selected accounts for run %s", len(rows), run_id)

    # ------------------------------------------------------------------
    # Seed addresses
    # ------------------------------------------------------------------

    def load_seed_addresses(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT address FROM seed_addresses WHERE is_active = 1 ORDER BY added_at, address"
        ).fetchall()
        return [r["address"] for r in rows]

    def add_seed_addresses(self, addresses: Iterable[str], source: str = "manual") -> tuple[int, int]:
        """Insert new seeds; returns ``(added, duplicates)``."""
        added = duplicates = 0
        with self._conn:
            for address in addresses:
                cur = self._conn.execute(
                    "INSERT OR IGNORE INTO seed_addresses (address, source) VALUES (?, ?)",
                    (address, source),
                )
                if cur.rowcount:
                    added += 1
                else:
                    duplicates += 1
        return added, duplicates

    # ------------------------------------------------------------------
    # Queries (reporting)
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        run = dict(row)
        run["config"] = _loads(run["config"])
        run["stats"] = _loads(run["stats"])
        return run

    def latest_run_id(self) -> str | None:
        row = self._conn.execute(
            "SELECT id FROM runs ORDER BY started_at DESC, rowid DESC LIMIT 1"
        ).fetchone()
        return row["id"] if row else None

    def get_run_stats(self, run_id: str) -> dict[str, Any]:
        selected = self._conn.execute(
            "SELECT COUNT(*) FROM selected_accounts WHERE run_id = ?", (run_id,)
        ).fetchone()[0]
        snapshots = self._conn.execute(
            "SELECT COUNT(*) FROM account_metrics_snapshot WHERE run_id = ?", (run_id,)
        ).fetchone()[0]
        return {
            "run": self.get_run(run_id),
            "selected_count": selected,
            "snapshot_count": snapshots,
        }

    def get_selected_accounts(self, run_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Selected accounts in rank order, joined with their run snapshot."""
        sql = """
            SELECT sa.rank, sa.address, sa.selection_score, sa.reason_tags,
                   s.strict_win_rate, s.proxy_win_rate, s.total_volume_usd,
                   s.total_trades, s.realized_pnl, s.confidence_score
            FROM selected_accounts sa
            LEFT JOIN account_metrics_snapshot s
                   ON s.run_id = sa.run_id AND s.address = sa.address
            WHERE sa.run_id = ?
            ORDER BY sa.rank
        """
        params: tuple[Any, ...] = (run_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (run_id, limit)
        accounts = []
        for row in self._conn.execute(sql, params).fetchall():
            account = dict(row)
            account["reason_tags"] = _loads(account["reason_tags"]) or []
            accounts.append(account)
        return accounts

    def confidence_distribution(self, run_id: str) -> dict[str, int]:
        row = self._conn.execute(
            """
            SELECT
                COUNT(CASE WHEN confidence_score >= 0.5 THEN 1 END) AS high_confidence,
                COUNT(CASE WHEN confidence_score >= 0.3 AND confidence_score < 0.5 THEN 1 END)
                    AS medium_confidence,
                COUNT(CASE WHEN confidence_score < 0.3 THEN 1 END) AS low_confidence,
                COUNT(CASE WHEN strict_win_rate IS NOT NULL THEN 1 END) AS strict_win_rate_count,
                COUNT(CASE WHEN strict_win_rate IS NULL AND proxy_win_rate IS NOT NULL THEN 1 END)
                    AS proxy_only_count,
                COUNT(CASE WHEN strict_win_rate IS NULL AND proxy_win_rate IS NULL THEN 1 END)
                    AS no_win_rate_count
            FROM account_metrics_snapshot
            WHERE run_id = ?
            """,
            (run_id,),
        ).fetchone()
        return dict(row)

    def account_changes(self, run_id: str) -> dict[str, int]:
        """Accounts first seen in this run versus existing accounts it updated."""
        row = self._conn.execute(
            """
            SELECT
                COUNT(CASE WHEN a.first_seen_at >= r.started_at THEN 1 END) AS new_accounts,
                COUNT(CASE WHEN a.first_seen_at < r.started_at THEN 1 END) AS updated_accounts
            FROM accounts a
            JOIN runs r ON r.id = a.last_sync_run_id
            WHERE a.last_sync_run_id = ?
            """,
            (run_id,),
        ).fetchone()
        return dict(row)
