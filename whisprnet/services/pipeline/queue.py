from __future__ import annotations

import asyncio
from collections import deque
import logging
from typing import Any, Awaitable, Callable, Deque, Generic, Hashable, Protocol, TypeVar

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings

from whisprnet.core.config import get_settings
from whisprnet.domain.events import CanonicalEvent
from whisprnet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CLASSIFY_JOB = "classify_event"

T = TypeVar("T")


class EventQueue(Protocol):
    # Hand-off seam between the webhook receiver and the classifier consumers.
    async def enqueue(self, event: CanonicalEvent) -> None: ...

    async def depth(self) -> int | None: ...


class TenantFairQueue(Generic[T]):
    """Unbounded queue with one FIFO per tenant, dispatched round robin.

    A tenant with a deep backlog gets one item per turn like everyone else, so a
    burst from one organization delays the others by at most one item per tenant.
    ``join``/``task_done`` follow ``asyncio.Queue`` semantics.
    """

    def __init__(self) -> None:
        self._queues: dict[Hashable, Deque[T]] = {}
        self._order: Deque[Hashable] = deque()
        self._ready = asyncio.Semaphore(0)
        self._unfinished = 0
        self._finished = asyncio.Event()
        self._finished.set()

    def put_nowait(self, tenant: Hashable, item: T) -> None:
        queue = self._queues.get(tenant)
        if queue is None:
            queue = deque()
            self._queues[tenant] = queue
            self._order.append(tenant)
        queue.append(item)
        self._unfinished += 1
        self._finished.clear()
        self._ready.release()

    async def get(self) -> tuple[Hashable, T]:
        await self._ready.acquire()
        tenant = self._order.popleft()
        queue = self._queues[tenant]
        item = queue.popleft()
        if queue:
            self._order.append(tenant)
        else:
            del self._queues[tenant]
        return tenant, item

    def task_done(self) -> None:
        if self._unfinished <= 0:
            raise ValueError("task_done() called too many times")
        self._unfinished -= 1
        if self._unfinished == 0:
            self._finished.set()

    async def join(self) -> None:
        await self._finished.wait()

    def qsize(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    def tenant_depths(self) -> dict[Hashable, int]:
        return {tenant: len(queue) for tenant, queue in self._queues.items()}


class LocalEventQueue:
    """In-process pipeline: a tenant-fair queue drained by a pool of asyncio workers.

    Used when ``PIPELINE_EXECUTION_MODE=local`` and in tests. The handler raises
    ``arq.Retry`` for transient failures, mirroring the worker contract, and the
    event is put back after the requested delay.
    """

    def __init__(
        self,
        handler: Callable[[CanonicalEvent], Awaitable[Any]],
        *,
        workers: int | None = None,
    ) -> None:
        self._handler = handler
        self._workers = max(1, workers if workers is not None else get_settings().pipeline_local_workers)
        self._queue: TenantFairQueue[CanonicalEvent] = TenantFairQueue()
        self._tasks: list[asyncio.Task[None]] = []

    async def enqueue(self, event: CanonicalEvent) -> None:
        self._queue.put_nowait(event.organization_id, event)

    async def depth(self) -> int | None:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._consume(index), name=f"whisprnet-pipeline-{index}")
            for index in range(self._workers)
        ]
        logger.info("pipeline.local.started workers=%s", self._workers)

    async def drain(self) -> None:
        # Wait until every enqueued event (including retries) has been handled.
        await self._queue.join()

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("pipeline.local.stopped")

    async def _consume(self, index: int) -> None:
        while True:
            tenant, event = await self._queue.get()
            try:
                await self._handler(event)
            except Retry as exc:
                delay_ms = getattr(exc, "defer_score", None) or 0
                await asyncio.sleep(delay_ms / 1000.0)
                # Requeue before task_done so drain() keeps waiting for the retry.
                self._queue.put_nowait(tenant, event)
            except asyncio.CancelledError:
                self._queue.task_done()
                raise
            except Exception:  # noqa: BLE001 - one bad event must not kill the consumer
                increment_counter("pipeline_unhandled_errors_total")
                logger.exception("pipeline.local.unhandled worker=%s event_id=%s", index, event.id)
            self._queue.task_done()


class ArqEventQueue:
    """Producer side of the Redis-backed pipeline consumed by the arq worker."""

    def __init__(self, redis_url: str | None = None, *, queue_name: str | None = None) -> None:
        settings = get_settings()
        self._redis_url = redis_url or settings.redis_url
        self.queue_name = queue_name or settings.pipeline_queue_name
        self._pool: ArqRedis | None = None
        self._pool_loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    async def pool(self) -> ArqRedis:
        # Cache the pool per event loop; tests run each case on a fresh loop.
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and self._pool_loop is current_loop:
            return self._pool
        async with self._lock:
            if self._pool is None or self._pool_loop is not current_loop:
                self._pool = await create_pool(
                    RedisSettings.from_dsn(self._redis_url),
                    default_queue_name=self.queue_name,
                )
                self._pool_loop = current_loop
        return self._pool

    async def enqueue(self, event: CanonicalEvent) -> None:
        redis = await self.pool()
        # A stable job id lets arq drop a second enqueue of the same event.
        job = await redis.enqueue_job(
            CLASSIFY_JOB,
            event.model_dump(mode="json"),
            _job_id=f"classify:{event.id}",
            _queue_name=self.queue_name,
        )
        if job is None:
            logger.info("pipeline.enqueue.already_queued event_id=%s", event.id)

    async def depth(self) -> int | None:
        # None signals an unreachable Redis to the admin endpoint.
        try:
            redis = await self.pool()
            return int(await redis.zcard(self.queue_name))
        except Exception:  # noqa: BLE001 - admin surfaces report degraded Redis
            return None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
            self._pool_loop = None
