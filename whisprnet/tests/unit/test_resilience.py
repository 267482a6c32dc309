from __future__ import annotations

import asyncio

import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from whisprnet.core.errors import TransientError
from whisprnet.services.resilience import (
    RetryPolicy,
    backoff_delay_s,
    is_transient_storage_error,
    retry_async,
)
from whisprnet.services.telemetry import counters_snapshot


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(flaky, policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1))
    assert result == "ok"
    assert calls["count"] == 2
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_client_errors() -> None:
    calls = {"count": 0}
    request = httpx.Request("GET", "https://github.test/user")

    async def rejected() -> None:
        calls["count"] += 1
        raise httpx.HTTPStatusError("bad", request=request, response=httpx.Response(401, request=request))

    with pytest.raises(httpx.HTTPStatusError):
        await retry_async(rejected, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_gives_up_after_max_attempts() -> None:
    calls = {"count": 0}
    request = httpx.Request("POST", "https://slack.test/api/chat.postMessage")

    async def down() -> None:
        calls["count"] += 1
        raise httpx.HTTPStatusError("down", request=request, response=httpx.Response(503, request=request))

    with pytest.raises(httpx.HTTPStatusError):
        await retry_async(down, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_retry_async_enforces_timeout() -> None:
    async def slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(asyncio.TimeoutError):
        await retry_async(slow, policy=RetryPolicy(timeout_ms=10, max_attempts=1, backoff_ms=1))


def test_storage_error_classification() -> None:
    assert is_transient_storage_error(OperationalError("SELECT 1", {}, Exception("database is locked"))) is True
    assert is_transient_storage_error(TransientError("redis down")) is True
    assert is_transient_storage_error(IntegrityError("INSERT", {}, Exception("unique"))) is False
    assert is_transient_storage_error(ValueError("bad")) is False


def test_backoff_grows_with_attempts() -> None:
    first = backoff_delay_s(100, 1)
    third = backoff_delay_s(100, 3)
    assert 0.05 <= first <= 0.15
    assert 0.2 <= third <= 0.6
