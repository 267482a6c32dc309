from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging

from arq import Retry
import httpx

from whisprnet.core.config import get_settings
from whisprnet.domain.events import CanonicalEvent
from whisprnet.persistence.db import Database
from whisprnet.persistence.repos import events as events_repo
from whisprnet.services.delivery.slack import deliver_to_slack
from whisprnet.services.insights.classifier import InsightClassifier
from whisprnet.services.pipeline.queue import EventQueue
from whisprnet.services.resilience import backoff_delay_s, is_transient_storage_error
from whisprnet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_FINAL_STATUSES = frozenset({"processed", "failed", "ignored"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _failure_reason(exc: Exception) -> str:
    # Short operator-facing reason; stack traces stay in the logs.
    return f"{exc.__class__.__name__}: {str(exc)[:200]}"


class EventProcessor:
    """Consumer side of the pipeline, shared by the local queue and the arq worker.

    Classification attempts are counted on the webhook ledger row rather than on
    the queue job, so tenant deferrals never use up the retry budget.
    """

    def __init__(
        self,
        database: Database,
        classifier: InsightClassifier,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.database = database
        self.classifier = classifier
        self.http_transport = http_transport

    async def process(self, event: CanonicalEvent) -> str:
        # One classification attempt; raises arq.Retry for transient storage failures.
        settings = get_settings()
        max_tries = max(1, int(settings.pipeline_max_tries))
        async with self.database.session() as db:
            ledger = await events_repo.get_delivery(
                db, provider=event.provider, delivery_id=event.delivery_id
            )
            if ledger is None or ledger.status in _FINAL_STATUSES:
                # Redelivered job, requeue race, or a purged organization.
                logger.info("pipeline.event.skipped event_id=%s", event.id)
                return "skipped"
            attempt = int(ledger.attempts or 0) + 1
            try:
                insights = await self.classifier.classify(db, event)
            except Exception as exc:  # noqa: BLE001 - classified below into retry or failure
                await db.rollback()
                if is_transient_storage_error(exc) and attempt < max_tries:
                    await self._record_attempt(event, attempt=attempt, error=_failure_reason(exc))
                    increment_counter("pipeline_retries_total")
                    delay_s = backoff_delay_s(settings.pipeline_retry_backoff_ms, attempt)
                    logger.warning(
                        "pipeline.event.retry event_id=%s attempt=%s error=%s",
                        event.id,
                        attempt,
                        exc.__class__.__name__,
                    )
                    raise Retry(defer=timedelta(seconds=delay_s)) from exc
                await self._record_failure(event, attempt=attempt, error=_failure_reason(exc))
                increment_counter("pipeline_failed_total")
                logger.exception("pipeline.event.failed event_id=%s attempt=%s", event.id, attempt)
                return "failed"
            insight_ids = [insight.id for insight in insights]
            await events_repo.mark_delivery_status(
                db,
                provider=event.provider,
                delivery_id=event.delivery_id,
                status="processed",
                processed_at=_utc_now(),
                attempts=attempt,
            )
            await db.commit()
        increment_counter("pipeline_processed_total")
        logger.info(
            "pipeline.event.processed event_id=%s organization_id=%s insights=%s",
            event.id,
            event.organization_id,
            len(insight_ids),
        )
        if insights:
            await self._deliver(event, insights)
        return "processed"

    async def _deliver(self, event: CanonicalEvent, insights: list) -> None:
        # Delivery problems never undo a finished classification.
        try:
            async with self.database.session() as db:
                await deliver_to_slack(
                    db,
                    organization_id=event.organization_id,
                    insights=insights,
                    transport=self.http_transport,
                )
        except Exception:  # noqa: BLE001 - logged and counted; insights stay undelivered
            increment_counter("slack_delivery_failures_total")
            logger.exception("pipeline.delivery.failed event_id=%s", event.id)

    async def _record_attempt(self, event: CanonicalEvent, *, attempt: int, error: str) -> None:
        try:
            async with self.database.session() as db:
                await events_repo.mark_delivery_status(
                    db,
                    provider=event.provider,
                    delivery_id=event.delivery_id,
                    status="queued",
                    last_error=error,
                    attempts=attempt,
                )
                await db.commit()
        except Exception as exc:  # noqa: BLE001 - storage is already degraded; the retry still runs
            logger.warning(
                "pipeline.event.attempt_not_recorded event_id=%s error=%s", event.id, exc.__class__.__name__
            )

    async def _record_failure(self, event: CanonicalEvent, *, attempt: int, error: str) -> None:
        async with self.database.session() as db:
            await events_repo.mark_delivery_status(
                db,
                provider=event.provider,
                delivery_id=event.delivery_id,
                status="failed",
                processed_at=_utc_now(),
                last_error=error,
                attempts=attempt,
            )
            await db.commit()


def retention_window(classifier: InsightClassifier) -> timedelta:
    # Never purge inside the longest rule window; the setting can only extend it.
    configured = timedelta(minutes=max(0, int(get_settings().event_retention_minutes)))
    return max(configured, classifier.registry.longest_window())


async def purge_expired_events(
    database: Database, classifier: InsightClassifier, *, now: datetime | None = None
) -> int:
    cutoff = (now or _utc_now()) - retention_window(classifier)
    async with database.session() as db:
        purged = await events_repo.purge_events_before(db, cutoff)
        await db.commit()
    if purged:
        increment_counter("events_purged_total", purged)
        logger.info("pipeline.events.purged count=%s cutoff=%s", purged, cutoff.isoformat())
    return purged


async def requeue_stale_deliveries(
    database: Database, queue: EventQueue, *, now: datetime | None = None, limit: int = 200
) -> int:
    # Recover events whose hand-off missed the ack budget or whose job was lost.
    settings = get_settings()
    received_before = (now or _utc_now()) - timedelta(seconds=settings.pipeline_requeue_after_s)
    requeued = 0
    async with database.session() as db:
        stale = await events_repo.list_stale_queued(db, received_before=received_before, limit=limit)
        for ledger in stale:
            event = await events_repo.get_event_by_delivery(
                db, provider=ledger.provider, delivery_id=ledger.delivery_id
            )
            if event is None:
                continue
            await queue.enqueue(event)
            requeued += 1
    if requeued:
        increment_counter("pipeline_requeued_total", requeued)
        logger.info("pipeline.deliveries.requeued count=%s", requeued)
    return requeued


async def run_maintenance(
    database: Database,
    classifier: InsightClassifier,
    queue: EventQueue,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    requeued = await requeue_stale_deliveries(database, queue, now=now)
    purged = await purge_expired_events(database, classifier, now=now)
    return {"requeued": requeued, "purged": purged}


class MaintenanceLoop:
    """Background task that periodically runs ``run_maintenance``.

    The arq worker runs one per process; the API runs one in local execution mode,
    where no worker exists to requeue stranded rows or purge old events.
    """

    def __init__(
        self,
        database: Database,
        classifier: InsightClassifier,
        queue: EventQueue,
        *,
        interval_s: float | None = None,
    ) -> None:
        self._database = database
        self._classifier = classifier
        self._queue = queue
        configured = interval_s if interval_s is not None else get_settings().pipeline_maintenance_interval_s
        self._interval_s = max(0.01, float(configured))
        self._task: asyncio.Task[None] | None = None
        self.passes = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="whisprnet-maintenance")
        logger.info("pipeline.maintenance.started interval_s=%s", self._interval_s)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await run_maintenance(self._database, self._classifier, self._queue)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - the next tick retries the sweep
                logger.exception("pipeline.maintenance.failed")
            self.passes += 1
