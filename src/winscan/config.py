"""Scanner configuration loaded from environment variables and ``.env``."""

from __future__ import annotations

from pydantic_settings import BaseSettings

# ---------------------------------------------------------------------------
# Upstream API endpoints
# ---------------------------------------------------------------------------

DEFAULT_BASE_URL = "https://data-api.polymarket.com"

ENDPOINT_TRADES = "/trades"
ENDPOINT_POSITIONS = "/positions"
ENDPOINT_CLOSED_POSITIONS = "/closed-positions"
ENDPOINT_ACTIVITY = "/activity"

MAX_TRADES_PAGE_SIZE = 1000

# ---------------------------------------------------------------------------
# Scoring constants
# ---------------------------------------------------------------------------

VOLUME_NORMALIZATION_CAP = 1_000_000

HIGH_WINRATE = 0.6
MEDIUM_WINRATE = 0.5
HIGH_VOLUME = 10_000
MEDIUM_VOLUME = 1_000
HIGH_CONFIDENCE = 0.5
MEDIUM_CONFIDENCE = 0.3
ACTIVE_TRADER_TRADES = 100
REGULAR_TRADER_TRADES = 20
CONSISTENT_WINRATE = 0.55
CONSISTENT_MIN_CLOSED = 10


class ScannerSettings(BaseSettings):
    """All scanner tunables, overridable via SCANNER_* env vars."""

    # --- API ---
    BASE_URL: str = DEFAULT_BASE_URL
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    # --- Rate limits (requests per window) ---
    RATE_LIMIT_TRADES_MAX_REQUESTS: int = 200
    RATE_LIMIT_TRADES_WINDOW_SECONDS: float = 10.0
    RATE_LIMIT_POSITIONS_MAX_REQUESTS: int = 150
    RATE_LIMIT_POSITIONS_WINDOW_SECONDS: float = 10.0
    RATE_LIMIT_CLOSED_POSITIONS_MAX_REQUESTS: int = 150
    RATE_LIMIT_CLOSED_POSITIONS_WINDOW_SECONDS: float = 10.0
    RATE_LIMIT_ACTIVITY_MAX_REQUESTS: int = 150
    RATE_LIMIT_ACTIVITY_WINDOW_SECONDS: float = 10.0

    # --- Retry ---
    MAX_RETRIES: int = 5
    RETRY_BASE_DELAY_SECONDS: float = 1.0

    # --- Collection ---
    WINDOW_DAYS: int = 90
    MAX_ACTIVITY_PAGES: int = 5
    ACTIVITY_PAGE_SIZE: int = 500
    MIN_TRADES_FOR_STOP: int = 200
    MIN_VOLUME_FOR_STOP: float = 10_000
    DISCOVER_TRADES: int = 100
    CONCURRENCY: int = 1
    RUN_TIMEOUT_SECONDS: float | None = None

    # --- Scoring weights ---
    WIN_RATE_WEIGHT: float = 0.5
    VOLUME_WEIGHT: float = 0.3
    CONFIDENCE_WEIGHT: float = 0.2

    # --- Selection thresholds ---
    MIN_TRADES: int = 50
    MIN_VOLUME_USD: float = 5_000
    MIN_WIN_RATE: float = 0.58
    MIN_CONFIDENCE: float = 0.1
    MIN_PNL: float = 0
    TOP_N: int = 100

    # --- Storage / reporting / logging ---
    DB_PATH: str = "data/winscan.db"
    REPORT_DIR: str = "reports"
    LOG_FORMAT: str = "console"
    LOG_LEVEL: str = "INFO"

    model_config = {
        "env_prefix": "SCANNER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def rate_limits(self) -> dict[str, tuple[int, float]]:
        """Return ``{category: (max_requests, window_seconds)}`` for each throttle."""
        return {
            "trades": (
                self.RATE_LIMIT_TRADES_MAX_REQUESTS,
                self.RATE_LIMIT_TRADES_WINDOW_SECONDS,
            ),
            "positions": (
                self.RATE_LIMIT_POSITIONS_MAX_REQUESTS,
                self.RATE_LIMIT_POSITIONS_WINDOW_SECONDS,
            ),
            "closed_positions": (
                self.RATE_LIMIT_CLOSED_POSITIONS_MAX_REQUESTS,
                self.RATE_LIMIT_CLOSED_POSITIONS_WINDOW_SECONDS,
            ),
            "activity": (
                self.RATE_LIMIT_ACTIVITY_MAX_REQUESTS,
                self.RATE_LIMIT_ACTIVITY_WINDOW_SECONDS,
            ),
        }
