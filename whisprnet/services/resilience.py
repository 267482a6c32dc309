from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy.exc import DBAPIError, OperationalError

from whisprnet.core.config import get_settings
from whisprnet.core.errors import TransientError
from whisprnet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, httpx.TransportError, TransientError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures and 5xx provider responses.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


def is_transient_storage_error(exc: Exception) -> bool:
    # Connection drops and lock timeouts are retryable; constraint violations are not.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def backoff_delay_s(backoff_ms: int, attempt: int) -> float:
    # Exponential backoff with +/-50% jitter.
    jitter = random.uniform(0.5, 1.5)
    return (backoff_ms / 1000.0) * (2 ** (max(attempt, 1) - 1)) * jitter


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            logger.info("retry_async.retrying attempt=%s error=%s", attempt, exc.__class__.__name__)
            await asyncio.sleep(backoff_delay_s(policy.backoff_ms, attempt))
            attempt += 1
