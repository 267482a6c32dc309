from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.core.errors import MalformedPayloadError, NotFoundError
from whisprnet.domain.models import Insight, InsightDelivery
from whisprnet.persistence.guards import tenant_predicate
from whisprnet.persistence.repos.insights import get_insight


logger = logging.getLogger(__name__)

MAX_CHANNEL_LENGTH = 64


@dataclass(frozen=True)
class DeliveryOutcome:
    insight: Insight
    already_delivered: bool


def normalize_channel(channel: str) -> str:
    cleaned = (channel or "").strip().lower()
    if not cleaned or len(cleaned) > MAX_CHANNEL_LENGTH:
        raise MalformedPayloadError("Delivery channel must be 1-64 characters")
    return cleaned


async def mark_delivered(
    db: AsyncSession, *, organization_id: str, insight_id: str, channel: str
) -> DeliveryOutcome:
    """Record that an insight reached ``channel``.

    At most one record exists per (insight, channel); repeating the call is a
    successful no-op. Insights outside ``organization_id`` are reported as missing.
    """
    channel = normalize_channel(channel)
    insight = await get_insight(db, organization_id, insight_id)
    if insight is None:
        raise NotFoundError("Insight not found")
    existing = await db.execute(
        select(InsightDelivery.id).where(
            InsightDelivery.insight_id == insight.id,
            InsightDelivery.channel == channel,
        )
    )
    if existing.scalar_one_or_none() is not None:
        return DeliveryOutcome(insight=insight, already_delivered=True)

    db.add(InsightDelivery(insight_id=insight.id, organization_id=organization_id, channel=channel))
    try:
        # The update autoflushes the insert, so a concurrent duplicate can surface here.
        # Forward-only flip; never written back to false.
        await db.execute(
            update(Insight)
            .where(Insight.id == insight.id, tenant_predicate(Insight, organization_id))
            .values(delivered=True)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info(
            "delivery.already_recorded insight_id=%s channel=%s", insight_id, channel
        )
        refreshed = await get_insight(db, organization_id, insight_id)
        if refreshed is None:
            raise NotFoundError("Insight not found")
        return DeliveryOutcome(insight=refreshed, already_delivered=True)
    await db.refresh(insight)
    logger.info(
        "delivery.recorded organization_id=%s insight_id=%s channel=%s",
        organization_id,
        insight_id,
        channel,
    )
    return DeliveryOutcome(insight=insight, already_delivered=False)
