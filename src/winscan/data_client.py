"""Async HTTP client for the Polymarket data API with throttling and retries.

Every request passes through two layers:

* :class:`RequestThrottle` - one instance per endpoint category, enforcing a
  minimum spacing between granted requests so the aggregate rate stays under
  ``max_requests / window_seconds`` no matter how many workers share it.
* :class:`RetryPolicy` - classification-driven exponential backoff.  Network
  failures, ``429`` and ``5xx`` are retried; every other status fails fast.

The API is read-only and unauthenticated.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel

from winscan.config import (
    DEFAULT_BASE_URL,
    ENDPOINT_ACTIVITY,
    ENDPOINT_CLOSED_POSITIONS,
    ENDPOINT_POSITIONS,
    ENDPOINT_TRADES,
    MAX_TRADES_PAGE_SIZE,
    ScannerSettings,
)
from winscan.models import RawActivity, RawClosedPosition, RawPosition, TradeRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class DataAPIError(Exception):
    """Upstream failure.  ``status_code`` is ``None`` for network-level errors."""

    def __init__(self, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        label = status_code if status_code is not None else "network"
        super().__init__(f"Data API error {label}: {message}")

    @property
    def retryable(self) -> bool:
        return (
            self.status_code is None
            or self.status_code == 429
            or self.status_code >= 500
        )


def is_retryable(exc: BaseException) -> bool:
    """Return True when *exc* is a transient failure worth retrying."""
    if isinstance(exc, DataAPIError):
        return exc.retryable
    return isinstance(exc, (httpx.TransportError, TimeoutError))


# ---------------------------------------------------------------------------
# Request throttle
# ---------------------------------------------------------------------------


class RequestThrottle:
    """Minimum-spacing throttle for one endpoint category.

    ``min_interval = window_seconds / max_requests``.  :meth:`acquire` holds
    an ``asyncio.Lock`` across the whole read-wait-write of the last grant
    time, so concurrent callers are granted one at a time in arrival order
    and never share a slot.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        name: str = "",
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds < 0:
            raise ValueError("window_seconds must be non-negative")
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.min_interval = window_seconds / max_requests
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._last_granted: float | None = None
        self.granted = 0

    async def acquire(self) -> float:
        """Wait until a request may be issued; return the seconds waited."""
        async with self._lock:
            now = self._clock()
            waited = 0.0
            if self._last_granted is not None:
                elapsed = now - self._last_granted
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    await self._sleep(waited)
                    now = self._last_granted + self.min_interval
            self._last_granted = now
            self.granted += 1
            return waited


def build_throttles(limits: dict[str, tuple[int, float]]) -> dict[str, RequestThrottle]:
    """Create one throttle per category from ``{category: (max, window)}``."""
    return {
        category: RequestThrottle(max_requests, window, name=category)
        for category, (max_requests, window) in limits.items()
    }


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class RetryPolicy:
    """Retry a unit of work on transient failure with pure exponential backoff.

    Parameters
    ----------
    max_retries:
        Number of retries after the first attempt (``max_retries + 1``
        attempts in total).
    base_delay:
        Seconds to wait before the first retry; doubles each retry.
    """

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep or asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    async def execute(self, operation: Callable[[], Awaitable[T]], label: str = "request") -> T:
        """Run *operation* until it succeeds, fails permanently, or retries run out.

        Raises
        ------
        Exception
            The non-retryable error, or the last retryable error once all
            attempts are exhausted.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                if attempt >= self.max_retries:
                    logger.error(
                        "%s failed after %d attempts: %s", label, attempt + 1, exc
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Retryable failure on %s (attempt %d/%d), retrying in %.1fs: %s",
                    label,
                    attempt + 1,
                    self.max_retries + 1,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                attempt += 1


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def _records(payload: Any) -> list[dict[str, Any]]:
    """Extract the list of record dicts from a bare list or ``{"data": [...]}``."""
    if isinstance(payload, dict):
        payload = payload.get("data", [])
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


def _parse(model: type[M], payload: Any) -> list[M]:
    return [model.model_validate(item) for item in _records(payload)]


class DataAPIClient:
    """Async client for the four read-only data API endpoints.

    Usage::

        async with DataAPIClient.from_settings(settings) as client:
            closed = await client.fetch_closed_positions("0xabc...")
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        throttles: dict[str, RequestThrottle] | None = None,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
        )
        self.throttles = throttles or build_throttles(ScannerSettings().rate_limits())
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_count = 0

    @classmethod
    def from_settings(cls, settings: ScannerSettings) -> DataAPIClient:
        return cls(
            base_url=settings.BASE_URL,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            throttles=build_throttles(settings.rate_limits()),
            retry_policy=RetryPolicy(
                max_retries=settings.MAX_RETRIES,
                base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            ),
        )

    # -- context manager ------------------------------------------------------

    async def __aenter__(self) -> DataAPIClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- low-level request ----------------------------------------------------

    async def _get(self, category: str, path: str, params: dict[str, Any], label: str) -> Any:
        """Throttled, retried GET returning the decoded JSON payload.

        The throttle is acquired per attempt so retries count against the
        category's rate as well.
        """
        throttle = self.throttles[category]

        async def attempt() -> Any:
            await throttle.acquire()
            self.request_count += 1
            try:
                response = await self._client.get(path, params=params)
            except httpx.HTTPError as exc:
                raise DataAPIError(None, f"{type(exc).__name__}: {exc}") from exc
            if response.status_code >= 400:
                raise DataAPIError(response.status_code, response.text[:200])
            try:
                return response.json()
            except ValueError as exc:
                raise DataAPIError(response.status_code, "invalid JSON payload") from exc

        return await self.retry_policy.execute(attempt, label=label)

    # -- endpoints ------------------------------------------------------------

    async def fetch_trades(self, limit: int = 100, offset: int = 0) -> list[TradeRecord]:
        """Fetch one page of the public trade feed (used for address discovery)."""
        params: dict[str, Any] = {"limit": min(max(limit, 1), MAX_TRADES_PAGE_SIZE)}
        if offset:
            params["offset"] = offset
        payload = await self._get("trades", ENDPOINT_TRADES, params, label=f"trades:offset{offset}")
        return _parse(TradeRecord, payload)

    async def fetch_positions(self, address: str) -> list[RawPosition]:
        payload = await self._get(
            "positions", ENDPOINT_POSITIONS, {"user": address}, label=f"positions:{address}"
        )
        return _parse(RawPosition, payload)

    async def fetch_closed_positions(self, address: str) -> list[RawClosedPosition]:
        payload = await self._get(
            "closed_positions",
            ENDPOINT_CLOSED_POSITIONS,
            {"user": address},
            label=f"closed-positions:{address}",
        )
        return _parse(RawClosedPosition, payload)

    async def fetch_activity(
        self,
        address: str,
        after: int,
        before: int | None = None,
        limit: int = 500,
    ) -> list[RawActivity]:
        """Fetch one page of activity newer than *after* and older than *before*."""
        params: dict[str, Any] = {"user": address, "after": after, "limit": limit}
        if before is not None:
            params["before"] = before
        page = "latest" if before is None else f"before{before}"
        payload = await self._get(
            "activity", ENDPOINT_ACTIVITY, params, label=f"activity:{address}:{page}"
        )
        return _parse(RawActivity, payload)
