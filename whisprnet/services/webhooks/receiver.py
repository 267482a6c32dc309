from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Mapping

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from whisprnet.core.config import get_settings
from whisprnet.core.errors import MalformedPayloadError, SignatureVerificationError, TransientError
from whisprnet.domain.events import CanonicalEvent
from whisprnet.persistence.db import Database
from whisprnet.persistence.repos import events as events_repo
from whisprnet.services.audit import PROVIDER, AuditEventType, record_event
from whisprnet.services.integrations.store import WebhookSecretSnapshot, load_webhook_snapshot
from whisprnet.services.normalizer import is_supported, normalize
from whisprnet.services.pipeline.queue import EventQueue
from whisprnet.services.resilience import is_transient_storage_error
from whisprnet.services.telemetry import increment_counter
from whisprnet.services.webhooks.signatures import normalize_headers, verify_signature


logger = logging.getLogger(__name__)

# Every rejection carries the same message so callers cannot tell which check failed.
REJECTION_MESSAGE = "Webhook could not be authenticated"

SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"


@dataclass(frozen=True)
class ReceiveResult:
    # accepted | duplicate | ignored
    status: str
    delivery_id: str
    event_id: str | None = None
    reason: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot_problem(organization_hint: str | None, snapshot: WebhookSecretSnapshot | None) -> str | None:
    if not organization_hint:
        return "organization_missing"
    if snapshot is None:
        return "integration_missing"
    if not snapshot.organization_active:
        return "organization_inactive"
    if snapshot.verification_state != "verified":
        return "integration_unverified"
    if not snapshot.webhook_enabled:
        return "webhook_disabled"
    return None


def _parse_body(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Webhook body must be a JSON object")
    return payload


class WebhookReceiver:
    """Authenticates, deduplicates and normalizes inbound GitHub deliveries.

    Only an audit row is written before the signature checks out. Accepted events are
    recorded together with their ledger row, then handed to the pipeline queue
    inside the ack budget; a missed hand-off is left ``queued`` for the worker's
    requeue sweep and the provider still gets its acknowledgement.
    """

    provider = "github"

    def __init__(self, database: Database, queue: EventQueue) -> None:
        self.database = database
        self.queue = queue

    async def receive(
        self,
        organization_hint: str | None,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> ReceiveResult:
        received_at = _utc_now()
        normalized_headers = normalize_headers(headers)
        organization_id = (organization_hint or "").strip() or None

        snapshot = await self._load_snapshot(organization_id)
        problem = _snapshot_problem(organization_id, snapshot)
        verification = verify_signature(
            normalized_headers.get(SIGNATURE_HEADER),
            raw_body,
            snapshot.secret if snapshot is not None and problem is None else None,
        )
        if problem is None and not verification.ok:
            problem = verification.reason
        if problem is not None:
            increment_counter("webhook_rejected_total")
            logger.warning(
                "webhook.delivery.rejected provider=%s organization_id=%s reason=%s",
                self.provider,
                organization_id,
                problem,
            )
            await self._audit_rejection(snapshot, problem, normalized_headers.get(DELIVERY_HEADER))
            raise SignatureVerificationError(REJECTION_MESSAGE)

        event_type = normalized_headers.get(EVENT_HEADER)
        delivery_id = normalized_headers.get(DELIVERY_HEADER)
        if not event_type or not delivery_id:
            increment_counter("webhook_malformed_total")
            raise MalformedPayloadError("Missing X-GitHub-Event or X-GitHub-Delivery header")
        payload = _parse_body(raw_body)

        subscribed = snapshot.subscribed_events
        if not is_supported(self.provider, event_type) or (subscribed and event_type not in subscribed):
            return await self._record_ignored(
                organization_id=snapshot.organization_id,
                event_type=event_type,
                delivery_id=delivery_id,
                payload_digest=verification.payload_sha256,
                received_at=received_at,
            )

        try:
            event = normalize(
                self.provider,
                event_type,
                payload,
                organization_id=snapshot.organization_id,
                delivery_id=delivery_id,
                payload_sha256=verification.payload_sha256,
                received_at=received_at,
            )
        except MalformedPayloadError:
            increment_counter("webhook_malformed_total")
            logger.info(
                "webhook.delivery.malformed provider=%s delivery_id=%s event_type=%s",
                self.provider,
                delivery_id,
                event_type,
            )
            raise

        if not await self._record_event(event):
            return ReceiveResult(status="duplicate", delivery_id=delivery_id, event_id=event.id)
        await self._hand_off(event)
        increment_counter("webhook_accepted_total")
        logger.info(
            "webhook.delivery.accepted provider=%s organization_id=%s delivery_id=%s event_type=%s",
            self.provider,
            event.organization_id,
            delivery_id,
            event.event_type,
        )
        return ReceiveResult(status="accepted", delivery_id=delivery_id, event_id=event.id)

    async def _audit_rejection(
        self, snapshot: WebhookSecretSnapshot | None, reason: str, delivery_id: str | None
    ) -> None:
        # Attributed to the organization only when the hint named a configured one.
        async with self.database.session() as db:
            await record_event(
                db,
                AuditEventType.WEBHOOK_REJECTED,
                actor=PROVIDER,
                organization_id=snapshot.organization_id if snapshot is not None else None,
                outcome="failure",
                resource=("webhook_delivery", (delivery_id or "")[:128] or None),
                metadata={"provider": self.provider, "reason": reason},
                error_code=SignatureVerificationError.code,
            )

    async def _load_snapshot(self, organization_id: str | None) -> WebhookSecretSnapshot | None:
        if organization_id is None:
            return None
        try:
            async with self.database.session() as db:
                return await load_webhook_snapshot(
                    db, organization_id=organization_id, provider=self.provider
                )
        except SQLAlchemyError as exc:
            if is_transient_storage_error(exc):
                raise TransientError("Webhook storage is unavailable") from exc
            raise

    async def _record_ignored(
        self,
        *,
        organization_id: str,
        event_type: str,
        delivery_id: str,
        payload_digest: str,
        received_at: datetime,
    ) -> ReceiveResult:
        inserted = await self._insert(
            lambda db: events_repo.add_delivery(
                db,
                provider=self.provider,
                delivery_id=delivery_id,
                organization_id=organization_id,
                event_type=event_type,
                payload_sha256=payload_digest,
                status="ignored",
                received_at=received_at,
            ),
            delivery_id=delivery_id,
        )
        if not inserted:
            return ReceiveResult(status="duplicate", delivery_id=delivery_id)
        increment_counter("webhook_ignored_total")
        logger.info(
            "webhook.delivery.ignored provider=%s organization_id=%s delivery_id=%s event_type=%s",
            self.provider,
            organization_id,
            delivery_id,
            event_type,
        )
        return ReceiveResult(status="ignored", delivery_id=delivery_id, reason="unsupported_event_type")

    async def _record_event(self, event: CanonicalEvent) -> bool:
        def _add(db) -> None:
            events_repo.add_delivery(
                db,
                provider=event.provider,
                delivery_id=event.delivery_id,
                organization_id=event.organization_id,
                event_type=event.event_type,
                payload_sha256=event.payload_sha256,
                status="queued",
                received_at=event.received_at,
            )
            events_repo.add_event(db, event)

        return await self._insert(_add, delivery_id=event.delivery_id)

    async def _insert(self, add, *, delivery_id: str) -> bool:
        # The (provider, delivery_id) unique constraint is the dedup decision.
        try:
            async with self.database.session() as db:
                add(db)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    increment_counter("webhook_duplicate_total")
                    logger.info(
                        "webhook.delivery.duplicate provider=%s delivery_id=%s", self.provider, delivery_id
                    )
                    return False
        except SQLAlchemyError as exc:
            if is_transient_storage_error(exc):
                raise TransientError("Webhook storage is unavailable") from exc
            raise
        return True

    async def _hand_off(self, event: CanonicalEvent) -> None:
        budget_s = max(1, int(get_settings().webhook_ack_budget_ms)) / 1000.0
        try:
            await asyncio.wait_for(self.queue.enqueue(event), timeout=budget_s)
        except Exception as exc:  # noqa: BLE001 - the requeue sweep recovers queued rows
            increment_counter("webhook_handoff_deferred_total")
            logger.warning(
                "webhook.delivery.handoff_deferred provider=%s delivery_id=%s error=%s",
                self.provider,
                event.delivery_id,
                exc.__class__.__name__,
            )


