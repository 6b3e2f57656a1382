"""Unit tests for RequestThrottle, RetryPolicy and DataAPIClient.

No real HTTP calls are made: the client is driven through
``httpx.MockTransport`` and all sleeping is replaced by ``AsyncMock``.
"""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, call

import httpx
import pytest

from winscan.data_client import (
    DataAPIClient,
    DataAPIError,
    RequestThrottle,
    RetryPolicy,
    build_throttles,
    is_retryable,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, *values: float) -> None:
        self._values = list(values)

    def __call__(self) -> float:
        if len(self._values) > 1:
            return self._values.pop(0)
        return self._values[0]


def _make_client(handler, max_retries: int = 2) -> tuple[DataAPIClient, AsyncMock]:
    sleep = AsyncMock()
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://data-api.test"
    )
    throttles = build_throttles(
        {c: (1000, 0.0) for c in ("trades", "positions", "closed_positions", "activity")}
    )
    client = DataAPIClient(
        throttles=throttles,
        retry_policy=RetryPolicy(max_retries=max_retries, base_delay=1.0, sleep=sleep),
        http_client=http,
    )
    return client, sleep


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestRetryClassification:
    @pytest.mark.parametrize("status", [None, 429, 500, 502, 503])
    def test_transient_statuses_are_retryable(self, status):
        assert DataAPIError(status, "x").retryable is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_are_permanent(self, status):
        assert DataAPIError(status, "x").retryable is False

    def test_transport_errors_are_retryable(self):
        assert is_retryable(httpx.ConnectError("refused")) is True
        assert is_retryable(TimeoutError()) is True

    def test_programming_errors_are_not_retryable(self):
        assert is_retryable(ValueError("bad")) is False

    def test_error_message_names_network_failures(self):
        assert "network" in str(DataAPIError(None, "reset"))
        assert "503" in str(DataAPIError(503, "unavailable"))


# ---------------------------------------------------------------------------
# RequestThrottle
# ---------------------------------------------------------------------------


class TestRequestThrottle:
    def test_min_interval_from_rate(self):
        throttle = RequestThrottle(200, 10.0)
        assert throttle.min_interval == pytest.approx(0.05)

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            RequestThrottle(0, 10.0)

    async def test_first_request_is_not_delayed(self):
        sleep = AsyncMock()
        throttle = RequestThrottle(200, 10.0, clock=FakeClock(100.0), sleep=sleep)
        assert await throttle.acquire() == 0.0
        sleep.assert_not_awaited()

    async def test_waits_remaining_interval(self):
        sleep = AsyncMock()
        throttle = RequestThrottle(200, 10.0, clock=FakeClock(100.0, 100.01), sleep=sleep)
        await throttle.acquire()
        waited = await throttle.acquire()
        assert waited == pytest.approx(0.04)
        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(0.04)

    async def test_no_wait_after_interval_elapsed(self):
        sleep = AsyncMock()
        throttle = RequestThrottle(200, 10.0, clock=FakeClock(100.0, 100.2), sleep=sleep)
        await throttle.acquire()
        assert await throttle.acquire() == 0.0
        sleep.assert_not_awaited()

    async def test_concurrent_callers_share_one_schedule(self):
        """Five simultaneous callers are spaced one interval apart, not granted together."""
        sleep = AsyncMock()
        throttle = RequestThrottle(200, 10.0, clock=FakeClock(100.0), sleep=sleep)

        waits = await asyncio.gather(*(throttle.acquire() for _ in range(5)))

        assert sorted(waits) == pytest.approx([0.0, 0.05, 0.10, 0.15, 0.20])
        assert throttle.granted == 5

    async def test_real_clock_paces_aggregate_rate(self):
        throttle = RequestThrottle(10, 0.2)  # 20 ms spacing
        start = time.monotonic()
        await asyncio.gather(*(throttle.acquire() for _ in range(5)))
        assert time.monotonic() - start >= 0.07


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    async def test_503_503_200_succeeds_on_third_attempt(self):
        sleep = AsyncMock()
        policy = RetryPolicy(max_retries=5, base_delay=1.0, sleep=sleep)
        operation = AsyncMock(
            side_effect=[DataAPIError(503, "down"), DataAPIError(503, "down"), "ok"]
        )

        assert await policy.execute(operation) == "ok"
        assert operation.await_count == 3
        assert sleep.await_args_list == [call(1.0), call(2.0)]

    async def test_404_fails_immediately(self):
        sleep = AsyncMock()
        policy = RetryPolicy(sleep=sleep)
        operation = AsyncMock(side_effect=DataAPIError(404, "not found"))

        with pytest.raises(DataAPIError) as excinfo:
            await policy.execute(operation)

        assert excinfo.value.status_code == 404
        assert operation.await_count == 1
        sleep.assert_not_awaited()

    async def test_exhaustion_propagates_last_error(self):
        sleep = AsyncMock()
        policy = RetryPolicy(max_retries=2, base_delay=0.5, sleep=sleep)
        errors = [DataAPIError(500, "a"), DataAPIError(502, "b"), DataAPIError(503, "c")]
        operation = AsyncMock(side_effect=errors)

        with pytest.raises(DataAPIError) as excinfo:
            await policy.execute(operation)

        assert excinfo.value is errors[-1]
        assert operation.await_count == 3
        assert sleep.await_args_list == [call(0.5), call(1.0)]

    async def test_network_failure_is_retried(self):
        sleep = AsyncMock()
        policy = RetryPolicy(max_retries=1, sleep=sleep)
        operation = AsyncMock(side_effect=[DataAPIError(None, "reset"), [1, 2]])
        assert await policy.execute(operation) == [1, 2]

    async def test_each_call_has_its_own_attempt_counter(self):
        sleep = AsyncMock()
        policy = RetryPolicy(max_retries=1, base_delay=1.0, sleep=sleep)
        first = AsyncMock(side_effect=[DataAPIError(429, "slow down"), "a"])
        second = AsyncMock(side_effect=[DataAPIError(429, "slow down"), "b"])

        assert await policy.execute(first) == "a"
        assert await policy.execute(second) == "b"
        assert sleep.await_args_list == [call(1.0), call(1.0)]

    def test_delay_doubles(self):
        policy = RetryPolicy(base_delay=1.0)
        assert [policy.delay_for(a) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]


# ---------------------------------------------------------------------------
# DataAPIClient
# ---------------------------------------------------------------------------


class TestDataAPIClient:
    async def test_closed_positions_parsed_from_camel_case(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=[
                    {
                        "proxyWallet": "0xabc",
                        "conditionId": "0xc1",
                        "outcome": "Yes",
                        "realizedPnl": 12.5,
                        "resolvedAt": 1_700_000_000_000,
                    }
                ],
            )

        client, _ = _make_client(handler)
        closed = await client.fetch_closed_positions("0xabc")

        assert seen[0].url.path == "/closed-positions"
        assert seen[0].url.params["user"] == "0xabc"
        assert closed[0].realized_pnl == 12.5
        assert closed[0].resolved_at == 1_700_000_000  # milliseconds normalised
        assert client.request_count == 1

    async def test_data_envelope_and_malformed_numbers(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"data": [{"conditionId": "0xc1", "cashPnl": "n/a", "size": None}, "junk"]},
            )

        client, _ = _make_client(handler)
        positions = await client.fetch_positions("0xabc")

        assert len(positions) == 1
        assert positions[0].cash_pnl == 0.0
        assert positions[0].size == 0.0

    async def test_retries_server_errors(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json=[])])

        def handler(request: httpx.Request) -> httpx.Response:
            return next(responses)

        client, sleep = _make_client(handler)
        assert await client.fetch_positions("0xabc") == []
        assert client.request_count == 2
        sleep.assert_awaited_once_with(1.0)

    async def test_permanent_error_not_retried(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="no such user")

        client, sleep = _make_client(handler)
        with pytest.raises(DataAPIError) as excinfo:
            await client.fetch_positions("0xabc")

        assert excinfo.value.status_code == 404
        assert client.request_count == 1
        sleep.assert_not_awaited()

    async def test_transport_error_becomes_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client, _ = _make_client(handler, max_retries=1)
        with pytest.raises(DataAPIError) as excinfo:
            await client.fetch_activity("0xabc", after=0)

        assert excinfo.value.status_code is None
        assert client.request_count == 2

    async def test_activity_query_parameters(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"usdcSize": "25.5", "timestamp": 1_700_000_100}])

        client, _ = _make_client(handler)
        page = await client.fetch_activity("0xabc", after=1_700_000_000, before=1_700_000_200, limit=500)

        params = seen[0].url.params
        assert params["after"] == "1700000000"
        assert params["before"] == "1700000200"
        assert params["limit"] == "500"
        assert page[0].usdc_size == 25.5

    async def test_trades_limit_capped(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"proxyWallet": "0x1"}])

        client, _ = _make_client(handler)
        trades = await client.fetch_trades(limit=5000, offset=200)

        assert seen[0].url.params["limit"] == "1000"
        assert seen[0].url.params["offset"] == "200"
        assert trades[0].proxy_wallet == "0x1"

    async def test_context_manager_closes_owned_client(self):
        async with DataAPIClient(base_url="https://data-api.test") as client:
            assert client.request_count == 0
        assert client._client.is_closed
