"""Tests for schema creation and versioned migrations (winscan.database)."""

from __future__ import annotations

import sqlite3

import pytest

from winscan.database import (
    MIGRATIONS,
    applied_migrations,
    apply_migrations,
    get_connection,
    init_db,
)


@pytest.fixture()
def conn():
    connection = get_connection(":memory:")
    yield connection
    connection.close()


def _tables(conn: sqlite3.Connection, kind: str = "table") -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = ?", (kind,)).fetchall()
    return {r["name"] for r in rows}


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {r["name"] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}


class TestMigrations:
    def test_applies_all_versions_in_order(self, conn):
        assert apply_migrations(conn) == [version for version, _, _ in MIGRATIONS]
        assert applied_migrations(conn) == ["001", "002"]

    def test_second_run_is_a_noop(self, conn):
        apply_migrations(conn)
        assert apply_migrations(conn) == []
        count = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
        assert count == len(MIGRATIONS)

    def test_creates_tables_and_views(self, conn):
        apply_migrations(conn)
        assert {
            "runs",
            "accounts",
            "account_metrics_snapshot",
            "selected_accounts",
            "seed_addresses",
            "schema_migrations",
        } <= _tables(conn)
        assert {"v_top_accounts", "v_recent_runs"} <= _tables(conn, "view")

    def test_scoring_columns_added(self, conn):
        apply_migrations(conn)
        assert {"neutral_count", "closed_realized_pnl", "composite_score"} <= _columns(conn, "accounts")
        assert {
            "reason_tags",
            "score_breakdown",
            "partial_success",
            "failed_sources",
            "phase",
        } <= _columns(conn, "account_metrics_snapshot")

    def test_selected_accounts_has_rank(self, conn):
        apply_migrations(conn)
        assert "rank" in _columns(conn, "selected_accounts")

    def test_failed_migration_rolls_back(self, conn, monkeypatch):
        def broken(c: sqlite3.Connection) -> None:
            c.execute("CREATE TABLE half_done (id INTEGER)")
            raise sqlite3.OperationalError("boom")

        monkeypatch.setattr(
            "winscan.database.MIGRATIONS",
            [MIGRATIONS[0], ("002", "broken", broken)],
        )

        with pytest.raises(sqlite3.OperationalError):
            apply_migrations(conn)

        assert applied_migrations(conn) == ["001"]
        assert "half_done" not in _tables(conn)


class TestConnection:
    def test_row_factory(self, conn):
        assert conn.row_factory is sqlite3.Row

    def test_foreign_keys_enforced(self, conn):
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    def test_creates_parent_directory(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "scanner.db"
        connection = init_db(db_path)
        try:
            assert db_path.exists()
            assert applied_migrations(connection) == ["001", "002"]
        finally:
            connection.close()

    def test_reopen_existing_database(self, tmp_path):
        db_path = tmp_path / "scanner.db"
        init_db(db_path).close()
        connection = get_connection(db_path)
        try:
            assert apply_migrations(connection) == []
        finally:
            connection.close()
