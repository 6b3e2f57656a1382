"""SQLite schema, versioned migrations and connection management.

Tables:
- ``runs`` - one row per sync run (status, config, stats).
- ``accounts`` - latest metrics per address, updated every run.
- ``account_metrics_snapshot`` - per-run copy of each scored account.
- ``selected_accounts`` - accounts that passed selection in a run.
- ``seed_addresses`` - manually curated addresses evaluated every run.
- ``schema_migrations`` - applied migration versions.

Public API:
    get_connection(db_path)      - Returns a sqlite3.Connection with WAL mode.
    apply_migrations(conn)       - Applies pending migrations, returns versions.
    applied_migrations(conn)     - Versions already recorded.
    init_db(db_path)             - get_connection + apply_migrations.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# 001 - initial schema
# ---------------------------------------------------------------------------

_CREATE_RUNS = """
CREATE TABLE IF NOT EXISTS runs (
    id              TEXT PRIMARY KEY,
    started_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    completed_at    TEXT,
    status          TEXT NOT NULL DEFAULT 'running'
                    CHECK (status IN ('running', 'completed', 'failed')),
    config          TEXT,
    error_message   TEXT,
    stats           TEXT,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_CREATE_ACCOUNTS = """
CREATE TABLE IF NOT EXISTS accounts (
    address             TEXT PRIMARY KEY,
    first_seen_at       TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    last_seen_at        TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    last_sync_run_id    TEXT REFERENCES runs(id),
    total_trades        INTEGER NOT NULL DEFAULT 0,
    total_volume_usd    REAL NOT NULL DEFAULT 0,
    total_positions     INTEGER NOT NULL DEFAULT 0,
    closed_positions    INTEGER NOT NULL DEFAULT 0,
    win_count           INTEGER NOT NULL DEFAULT 0,
    loss_count          INTEGER NOT NULL DEFAULT 0,
    strict_win_rate     REAL,
    proxy_win_rate      REAL,
    realized_pnl        REAL NOT NULL DEFAULT 0,
    confidence_score    REAL,
    discovery_method    TEXT,
    discovered_at       TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    created_at          TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at          TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_CREATE_SNAPSHOTS = """
CREATE TABLE IF NOT EXISTS account_metrics_snapshot (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id              TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    address             TEXT NOT NULL REFERENCES accounts(address),
    strict_win_rate     REAL,
    proxy_win_rate      REAL,
    total_trades        INTEGER NOT NULL DEFAULT 0,
    total_volume_usd    REAL NOT NULL DEFAULT 0,
    realized_pnl        REAL NOT NULL DEFAULT 0,
    win_count           INTEGER NOT NULL DEFAULT 0,
    loss_count          INTEGER NOT NULL DEFAULT 0,
    closed_positions    INTEGER NOT NULL DEFAULT 0,
    confidence_score    REAL,
    score               REAL,
    positions_count     INTEGER,
    activity_count      INTEGER,
    created_at          TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE (run_id, address)
);
"""

_CREATE_SELECTED = """
CREATE TABLE IF NOT EXISTS selected_accounts (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id              TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    address             TEXT NOT NULL REFERENCES accounts(address),
    rank                INTEGER NOT NULL,
    reason_tags         TEXT,
    selection_score     REAL,
    strict_win_rate     REAL,
    total_trades        INTEGER,
    total_volume_usd    REAL,
    realized_pnl        REAL,
    created_at          TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE (run_id, address)
);
"""

_CREATE_SEEDS = """
CREATE TABLE IF NOT EXISTS seed_addresses (
    address     TEXT PRIMARY KEY,
    source      TEXT,
    notes       TEXT,
    is_active   INTEGER NOT NULL DEFAULT 1,
    added_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_CREATE_TOP_ACCOUNTS_VIEW = """
CREATE VIEW IF NOT EXISTS v_top_accounts AS
SELECT address, strict_win_rate, proxy_win_rate, total_trades, total_volume_usd,
       realized_pnl, win_count, loss_count, closed_positions, confidence_score,
       last_seen_at
FROM accounts
WHERE total_trades >= 10
  AND total_volume_usd >= 100
  AND strict_win_rate IS NOT NULL
ORDER BY strict_win_rate DESC, total_volume_usd DESC;
"""

_CREATE_RECENT_RUNS_VIEW = """
CREATE VIEW IF NOT EXISTS v_recent_runs AS
SELECT id, started_at, completed_at, status,
       json_extract(stats, '$.accounts_processed') AS accounts_processed,
       json_extract(stats, '$.accounts_selected') AS accounts_selected,
       (julianday(completed_at) - julianday(started_at)) * 86400.0 AS duration_seconds
FROM runs
ORDER BY started_at DESC
LIMIT 20;
"""

_INIT_STATEMENTS: list[str] = [
    _CREATE_RUNS,
    "CREATE INDEX IF NOT EXISTS idx_runs_started_at ON runs(started_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);",
    _CREATE_ACCOUNTS,
    "CREATE INDEX IF NOT EXISTS idx_accounts_strict_win_rate ON accounts(strict_win_rate DESC);",
    "CREATE INDEX IF NOT EXISTS idx_accounts_total_volume ON accounts(total_volume_usd DESC);",
    _CREATE_SNAPSHOTS,
    "CREATE INDEX IF NOT EXISTS idx_snapshot_run_id ON account_metrics_snapshot(run_id);",
    "CREATE INDEX IF NOT EXISTS idx_snapshot_score ON account_metrics_snapshot(score DESC);",
    _CREATE_SELECTED,
    "CREATE INDEX IF NOT EXISTS idx_selected_run_id ON selected_accounts(run_id);",
    _CREATE_SEEDS,
    _CREATE_TOP_ACCOUNTS_VIEW,
    _CREATE_RECENT_RUNS_VIEW,
]

_CREATE_SCHEMA_MIGRATIONS = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version     TEXT PRIMARY KEY,
    name        TEXT,
    applied_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""


# ---------------------------------------------------------------------------
# 002 - scoring detail columns
# ---------------------------------------------------------------------------


def _add_missing_columns(conn: sqlite3.Connection, table: str, columns: dict[str, str]) -> None:
    existing = {r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    for name, ddl in columns.items():
        if name not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


def _migrate_scoring_columns(conn: sqlite3.Connection) -> None:
    """Neutral outcomes, settled PnL and partial-collection flags."""
    _add_missing_columns(
        conn,
        "accounts",
        {
            "neutral_count": "INTEGER NOT NULL DEFAULT 0",
            "closed_realized_pnl": "REAL NOT NULL DEFAULT 0",
            "composite_score": "REAL",
        },
    )
    _add_missing_columns(
        conn,
        "account_metrics_snapshot",
        {
            "neutral_count": "INTEGER NOT NULL DEFAULT 0",
            "closed_realized_pnl": "REAL NOT NULL DEFAULT 0",
            "reason_tags": "TEXT",
            "score_breakdown": "TEXT",
            "partial_success": "INTEGER NOT NULL DEFAULT 0",
            "failed_sources": "TEXT",
            "phase": "TEXT",
        },
    )


def _migrate_init(conn: sqlite3.Connection) -> None:
    for stmt in _INIT_STATEMENTS:
        conn.execute(stmt)


# Ordered (version, name, apply) triples; versions are never reused.
MIGRATIONS: list[tuple[str, str, Callable[[sqlite3.Connection], None]]] = [
    ("001", "init", _migrate_init),
    ("002", "scoring_columns", _migrate_scoring_columns),
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    """Open (or create) a SQLite database configured for the scanner.

    Settings applied:
    - WAL journal mode for concurrent readers.
    - Foreign keys enforced.
    - Row factory set to sqlite3.Row for dict-like access.

    Parameters
    ----------
    db_path:
        Filesystem path to the SQLite database file.  Use ``":memory:"`` for
        an ephemeral in-memory database (useful in tests).  Parent
        directories are created as needed.
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def applied_migrations(conn: sqlite3.Connection) -> list[str]:
    conn.execute(_CREATE_SCHEMA_MIGRATIONS)
    rows = conn.execute("SELECT version FROM schema_migrations ORDER BY version").fetchall()
    return [r["version"] for r in rows]


def apply_migrations(conn: sqlite3.Connection) -> list[str]:
    """Apply every pending migration in order, each in its own transaction.

    Idempotent: already-recorded versions are skipped.

    Returns
    -------
    list[str]
        Versions applied by this call (empty when the schema is current).
    """
    if conn.in_transaction:
        conn.commit()
    done = set(applied_migrations(conn))
    applied: list[str] = []

    for version, name, migrate in MIGRATIONS:
        if version in done:
            continue
        logger.info("Applying migration %s_%s", version, name)
        conn.execute("BEGIN")
        try:
            migrate(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, name) VALUES (?, ?)",
                (version, name),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            logger.error("Migration %s_%s failed, rolled back", version, name)
            raise
        applied.append(version)

    return applied


def init_db(db_path: str | Path) -> sqlite3.Connection:
    """Open the database and bring the schema up to date."""
    conn = get_connection(db_path)
    apply_migrations(conn)
    return conn
