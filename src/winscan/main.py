"""Command-line entry point for the Polymarket winner scanner.

Subcommands:
  sync     - discover, screen, enrich, score and select accounts; store the run
  migrate  - bring the SQLite schema up to date
  report   - print the acceptance report for a run (default: latest)
  seed     - add seed addresses from a file
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

import structlog
from dotenv import load_dotenv
from rich.console import Console
from structlog.types import Processor

from winscan.config import ScannerSettings
from winscan.data_client import DataAPIClient
from winscan.database import apply_migrations, get_connection
from winscan.pipeline import load_seed_file, run_sync
from winscan.report import ReportError, build_report, render_selection_table, write_report
from winscan.storage import Storage

console = Console()
log = structlog.get_logger()

# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def configure_logging(log_format: str = "console", level: str = "INFO") -> None:
    """Route structlog and stdlib logging through one renderer.

    ``json`` emits JSON lines for log aggregation; anything else renders
    coloured console output.  A plain ``LOG_FORMAT`` environment variable
    overrides *log_format*.
    """
    use_json = (os.environ.get("LOG_FORMAT") or log_format).lower() == "json"

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if use_json:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    # Logs go to stderr so report/table output on stdout stays pipeable.
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------

# CLI flag dest -> settings field
_SYNC_OVERRIDES: dict[str, str] = {
    "min_trades": "MIN_TRADES",
    "min_volume": "MIN_VOLUME_USD",
    "min_winrate": "MIN_WIN_RATE",
    "min_confidence": "MIN_CONFIDENCE",
    "min_pnl": "MIN_PNL",
    "top_n": "TOP_N",
    "discover": "DISCOVER_TRADES",
    "window_days": "WINDOW_DAYS",
    "max_activity_pages": "MAX_ACTIVITY_PAGES",
    "concurrency": "CONCURRENCY",
    "timeout": "RUN_TIMEOUT_SECONDS",
    "db_path": "DB_PATH",
    "log_format": "LOG_FORMAT",
    "log_level": "LOG_LEVEL",
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.  Unset options fall back to settings."""
    parser = argparse.ArgumentParser(
        prog="winscan",
        description="Polymarket winner scanner - find and rank high-performing accounts",
    )
    parser.add_argument("--db-path", default=None, help="SQLite database path")
    parser.add_argument("--log-format", choices=["console", "json"], default=None)
    parser.add_argument("--log-level", default=None, help="Logging level (default: INFO)")

    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Run a full discovery/scoring/selection sync")
    sync.add_argument("--min-trades", type=int, default=None, help="Minimum trades in window")
    sync.add_argument("--min-volume", type=float, default=None, help="Minimum USD volume")
    sync.add_argument("--min-winrate", type=float, default=None, help="Minimum win rate (0-1)")
    sync.add_argument("--min-confidence", type=float, default=None, help="Minimum confidence score")
    sync.add_argument("--min-pnl", type=float, default=None, help="Minimum realized PnL")
    sync.add_argument("--top-n", type=int, default=None, help="Maximum accounts selected")
    sync.add_argument(
        "--discover", type=int, default=None, help="Recent trades to scan for new addresses (0 = off)"
    )
    sync.add_argument("--seed-file", default=None, help="File with one 0x address per line")
    sync.add_argument("--window-days", type=int, default=None, help="Look-back window in days")
    sync.add_argument("--max-activity-pages", type=int, default=None)
    sync.add_argument("--concurrency", type=int, default=None, help="Addresses evaluated at once")
    sync.add_argument("--timeout", type=float, default=None, help="Whole-run deadline in seconds")
    sync.add_argument("--report", action="store_true", help="Write the acceptance report")
    sync.add_argument("--report-file", default=None, help="Report path (implies --report)")

    sub.add_parser("migrate", help="Apply pending schema migrations")

    report = sub.add_parser("report", help="Print the acceptance report for a run")
    report.add_argument("run_id", nargs="?", default=None, help="Run ID (default: latest)")
    report.add_argument("--output", default=None, help="Write to this file instead of stdout")

    seed = sub.add_parser("seed", help="Add seed addresses from a file")
    seed.add_argument("file", help="File with one 0x address per line")
    seed.add_argument("--source", default="manual", help="Source label stored with the seeds")

    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace, settings: ScannerSettings) -> ScannerSettings:
    """Apply explicitly-given CLI options on top of *settings*."""
    updates = {
        field: getattr(args, dest)
        for dest, field in _SYNC_OVERRIDES.items()
        if getattr(args, dest, None) is not None
    }
    return settings.model_copy(update=updates) if updates else settings


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _sync(args: argparse.Namespace, settings: ScannerSettings) -> str:
    with Storage(settings.DB_PATH) as storage:
        async with DataAPIClient.from_settings(settings) as client:
            outcome = await run_sync(settings, client, storage, seed_file=args.seed_file)

        console.print(
            render_selection_table(storage.get_selected_accounts(outcome.run_id, limit=20))
        )
        if args.report or args.report_file:
            path = args.report_file or Path(settings.REPORT_DIR) / f"run-{outcome.run_id}.md"
            write_report(build_report(storage, outcome.run_id), path)
            log.info("report_written", path=str(path))
    return outcome.run_id


def cmd_sync(args: argparse.Namespace, settings: ScannerSettings) -> int:
    try:
        run_id = asyncio.run(_sync(args, settings))
    except Exception:
        log.exception("sync_aborted")
        return 1
    console.print(f"[green]Run {run_id} completed[/]")
    return 0


def cmd_migrate(settings: ScannerSettings) -> int:
    conn = get_connection(settings.DB_PATH)
    try:
        applied = apply_migrations(conn)
    finally:
        conn.close()
    if applied:
        console.print(f"Applied migrations: {', '.join(applied)}")
    else:
        console.print("Schema is up to date")
    return 0


def cmd_report(args: argparse.Namespace, settings: ScannerSettings) -> int:
    with Storage(settings.DB_PATH) as storage:
        try:
            text = build_report(storage, args.run_id)
        except ReportError as exc:
            log.error("report_failed", error=str(exc))
            return 1
    if args.output:
        write_report(text, args.output)
        log.info("report_written", path=args.output)
    else:
        sys.stdout.write(text)
    return 0


def cmd_seed(args: argparse.Namespace, settings: ScannerSettings) -> int:
    addresses = load_seed_file(args.file)
    with Storage(settings.DB_PATH) as storage:
        added, duplicates = storage.add_seed_addresses(addresses, source=args.source)
    console.print(f"Seed addresses: {added} added, {duplicates} already present")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Synchronous entry point; returns the process exit code."""
    load_dotenv()
    args = parse_args(argv)
    settings = settings_from_args(args, ScannerSettings())
    configure_logging(settings.LOG_FORMAT, settings.LOG_LEVEL)

    if args.command == "sync":
        return cmd_sync(args, settings)
    if args.command == "migrate":
        return cmd_migrate(settings)
    if args.command == "report":
        return cmd_report(args, settings)
    return cmd_seed(args, settings)


if __name__ == "__main__":
    sys.exit(main())
