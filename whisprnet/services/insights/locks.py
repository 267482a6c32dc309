from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from redis.asyncio import Redis

from whisprnet.core.errors import TransientError
from whisprnet.services.locks import KeyedLockRegistry


logger = logging.getLogger(__name__)

WINDOW_LOCK_PREFIX = "whisprnet:window-lock"


def window_lock_key(organization_id: str, channel: str, rule: str) -> str:
    return f"{WINDOW_LOCK_PREFIX}:{organization_id}:{channel}:{rule}"


class WindowLockRegistry:
    """Serializes windowed evaluation of one (organization, channel, rule).

    The in-process lock covers concurrent consumers inside one process. When a
    Redis client is supplied (queue mode) a token-owned ``SET NX`` lock also
    covers other worker processes.
    """

    def __init__(
        self,
        redis: Redis | None = None,
        *,
        ttl_s: int = 30,
        wait_s: float = 10.0,
        poll_s: float = 0.05,
    ) -> None:
        self._redis = redis
        self._local = KeyedLockRegistry()
        self._ttl_s = ttl_s
        self._wait_s = wait_s
        self._poll_s = poll_s

    @asynccontextmanager
    async def hold(self, organization_id: str, channel: str, rule: str) -> AsyncIterator[None]:
        key = window_lock_key(organization_id, channel, rule)
        async with self._local.hold(key):
            if self._redis is None:
                yield
                return
            token = await self._acquire_remote(key)
            try:
                yield
            finally:
                await self._release_remote(key, token)

    async def _acquire_remote(self, key: str) -> str:
        token = uuid4().hex
        deadline = time.monotonic() + self._wait_s
        while True:
            try:
                acquired = await self._redis.set(key, token, nx=True, ex=self._ttl_s)
            except Exception as exc:  # noqa: BLE001 - redis outages surface as retryable
                raise TransientError("Window lock backend unavailable") from exc
            if acquired:
                return token
            if time.monotonic() >= deadline:
                logger.warning("window_lock.timeout key=%s", key)
                raise TransientError("Timed out waiting for window lock")
            await asyncio.sleep(self._poll_s)

    async def _release_remote(self, key: str, token: str) -> None:
        # Release only if this holder still owns the token.
        try:
            current = await self._redis.get(key)
            value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
            if value == token:
                await self._redis.delete(key)
        except Exception as exc:  # noqa: BLE001 - the TTL reclaims an orphaned lock
            logger.warning("window_lock.release_failed key=%s error=%s", key, exc.__class__.__name__)

    def __len__(self) -> int:
        return len(self._local)
