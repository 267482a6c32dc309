from __future__ import annotations

from datetime import timedelta
import logging

from arq import Retry
from arq.connections import RedisSettings

from whisprnet.core.config import get_settings
from whisprnet.core.logging import configure_logging
from whisprnet.domain.events import CanonicalEvent
from whisprnet.persistence.db import Database
from whisprnet.services.insights import InsightClassifier, WindowLockRegistry
from whisprnet.services.pipeline.processor import EventProcessor, MaintenanceLoop
from whisprnet.services.pipeline.queue import ArqEventQueue
from whisprnet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

INFLIGHT_KEY_PREFIX = "whisprnet:inflight"
# Safety expiry so a crashed worker cannot pin a tenant's counter forever.
INFLIGHT_TTL_S = 300


def inflight_key(organization_id: str) -> str:
    return f"{INFLIGHT_KEY_PREFIX}:{organization_id}"


async def classify_event(ctx, payload: dict) -> str:
    # Validate the payload in the worker to enforce the canonical event contract.
    event = CanonicalEvent.model_validate(payload)
    settings = get_settings()
    redis = ctx["redis"]
    key = inflight_key(event.organization_id)
    inflight = await redis.incr(key)
    await redis.expire(key, INFLIGHT_TTL_S)
    try:
        if inflight > max(1, int(settings.pipeline_tenant_max_inflight)):
            # Over the tenant cap: step aside so other organizations keep moving.
            increment_counter("pipeline_tenant_deferrals_total")
            logger.info(
                "pipeline.tenant.deferred organization_id=%s event_id=%s inflight=%s",
                event.organization_id,
                event.id,
                inflight,
            )
            raise Retry(defer=timedelta(milliseconds=settings.pipeline_tenant_defer_ms))
        return await ctx["processor"].process(event)
    finally:
        await redis.decr(key)


async def _startup(ctx) -> None:
    # Each worker process owns its storage handle and pipeline collaborators.
    configure_logging()
    settings = get_settings()
    database = Database(settings=settings)
    classifier = InsightClassifier(locks=WindowLockRegistry(ctx["redis"]))
    ctx["database"] = database
    ctx["classifier"] = classifier
    ctx["processor"] = EventProcessor(database, classifier)
    ctx["event_queue"] = ArqEventQueue(settings.redis_url, queue_name=settings.pipeline_queue_name)
    # Requeue stranded ledger rows and purge events that left every rule window.
    ctx["maintenance"] = MaintenanceLoop(database, classifier, ctx["event_queue"])
    ctx["maintenance"].start()
    logger.info("pipeline.worker.started queue=%s", settings.pipeline_queue_name)


async def _shutdown(ctx) -> None:
    # Cancel background work before releasing connections.
    maintenance = ctx.get("maintenance")
    if maintenance is not None:
        await maintenance.stop()
    queue = ctx.get("event_queue")
    if queue is not None:
        await queue.close()
    database = ctx.get("database")
    if database is not None:
        await database.dispose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.pipeline_queue_name
    # Tenant deferrals also count as arq tries; the processor enforces the real attempt cap.
    max_tries = max(1, int(settings.pipeline_max_tries)) * 10
    # Results are not kept so a stranded event can be requeued under the same job id.
    keep_result = 0
    functions = [classify_event]
    on_startup = _startup
    on_shutdown = _shutdown

