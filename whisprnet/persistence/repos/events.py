from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.domain.events import CanonicalEvent
from whisprnet.domain.models import Event, WebhookDelivery, as_utc
from whisprnet.persistence.guards import tenant_predicate


def add_delivery(
    session: AsyncSession,
    *,
    provider: str,
    delivery_id: str,
    organization_id: str,
    event_type: str,
    payload_sha256: str,
    status: str,
    received_at: datetime,
) -> WebhookDelivery:
    row = WebhookDelivery(
        provider=provider,
        delivery_id=delivery_id,
        organization_id=organization_id,
        event_type=event_type,
        payload_sha256=payload_sha256,
        status=status,
        received_at=received_at,
    )
    session.add(row)
    return row


def add_event(session: AsyncSession, event: CanonicalEvent) -> Event:
    row = Event(
        id=event.id,
        organization_id=event.organization_id,
        provider=event.provider,
        event_type=event.event_type,
        action=event.action,
        actor=event.actor,
        channel=event.channel,
        occurred_at=event.occurred_at,
        received_at=event.received_at,
        delivery_id=event.delivery_id,
        payload_sha256=event.payload_sha256,
        attributes=dict(event.attributes),
    )
    session.add(row)
    return row


def to_canonical(row: Event) -> CanonicalEvent:
    return CanonicalEvent(
        id=row.id,
        organization_id=row.organization_id,
        provider=row.provider,
        event_type=row.event_type,
        action=row.action,
        actor=row.actor,
        channel=row.channel,
        occurred_at=as_utc(row.occurred_at),
        received_at=as_utc(row.received_at),
        delivery_id=row.delivery_id,
        payload_sha256=row.payload_sha256,
        attributes=dict(row.attributes or {}),
    )


async def list_window_events(
    session: AsyncSession,
    *,
    organization_id: str,
    channel: str,
    event_types: tuple[str, ...] | None,
    start: datetime,
    end: datetime,
) -> list[CanonicalEvent]:
    # Window bounds are inclusive so the triggering event is always part of its window.
    stmt = select(Event).where(
        tenant_predicate(Event, organization_id),
        Event.channel == channel,
        Event.occurred_at >= start,
        Event.occurred_at <= end,
    )
    if event_types:
        stmt = stmt.where(Event.event_type.in_(event_types))
    rows = (await session.execute(stmt.order_by(Event.occurred_at, Event.id))).scalars().all()
    return [to_canonical(row) for row in rows]


async def get_event(session: AsyncSession, event_id: str) -> CanonicalEvent | None:
    row = await session.get(Event, event_id)
    return to_canonical(row) if row is not None else None


async def get_event_by_delivery(
    session: AsyncSession, *, provider: str, delivery_id: str
) -> CanonicalEvent | None:
    result = await session.execute(
        select(Event).where(Event.provider == provider, Event.delivery_id == delivery_id)
    )
    row = result.scalar_one_or_none()
    return to_canonical(row) if row is not None else None


async def mark_delivery_status(
    session: AsyncSession,
    *,
    provider: str,
    delivery_id: str,
    status: str,
    processed_at: datetime | None = None,
    last_error: str | None = None,
    attempts: int | None = None,
) -> None:
    values: dict[str, object] = {"status": status, "last_error": last_error}
    if processed_at is not None:
        values["processed_at"] = processed_at
    if attempts is not None:
        values["attempts"] = attempts
    await session.execute(
        update(WebhookDelivery)
        .where(WebhookDelivery.provider == provider, WebhookDelivery.delivery_id == delivery_id)
        .values(**values)
    )


async def list_stale_queued(
    session: AsyncSession, *, received_before: datetime, limit: int = 200
) -> list[WebhookDelivery]:
    result = await session.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.status == "queued", WebhookDelivery.received_at < received_before)
        .order_by(WebhookDelivery.received_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def purge_events_before(session: AsyncSession, cutoff: datetime) -> int:
    # Only purge events whose own ledger row (same provider and delivery id) has finished.
    finished = (
        select(WebhookDelivery.id)
        .where(
            WebhookDelivery.provider == Event.provider,
            WebhookDelivery.delivery_id == Event.delivery_id,
            WebhookDelivery.status.in_(("processed", "failed")),
        )
        .correlate(Event)
        .exists()
    )
    result = await session.execute(
        delete(Event)
        .where(Event.occurred_at < cutoff, finished)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def get_delivery(session: AsyncSession, *, provider: str, delivery_id: str) -> WebhookDelivery | None:
    result = await session.execute(
        select(WebhookDelivery).where(
            WebhookDelivery.provider == provider, WebhookDelivery.delivery_id == delivery_id
        )
    )
    return result.scalar_one_or_none()


async def delivery_status_counts(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(WebhookDelivery.status, func.count(WebhookDelivery.id)).group_by(WebhookDelivery.status)
    )
    return {status: int(count) for status, count in result.all()}
