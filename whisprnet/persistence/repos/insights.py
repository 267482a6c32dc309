from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.domain.models import Insight, InsightDelivery
from whisprnet.persistence.guards import tenant_predicate


@dataclass(frozen=True)
class InsightFilters:
    channel: str | None = None
    category: str | None = None
    priority: str | None = None
    delivered: bool | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None


def _apply_filters(stmt, organization_id: str, filters: InsightFilters):
    stmt = stmt.where(tenant_predicate(Insight, organization_id))
    if filters.channel is not None:
        stmt = stmt.where(Insight.channel == filters.channel)
    if filters.category is not None:
        stmt = stmt.where(Insight.category == filters.category)
    if filters.priority is not None:
        stmt = stmt.where(Insight.priority == filters.priority)
    if filters.delivered is not None:
        stmt = stmt.where(Insight.delivered.is_(filters.delivered))
    if filters.created_after is not None:
        stmt = stmt.where(Insight.created_at >= filters.created_after)
    if filters.created_before is not None:
        stmt = stmt.where(Insight.created_at < filters.created_before)
    return stmt


async def list_insights(
    session: AsyncSession,
    organization_id: str,
    filters: InsightFilters,
    *,
    limit: int,
    offset: int,
) -> tuple[list[Insight], int]:
    # Newest first, with a total so clients can page.
    stmt = _apply_filters(select(Insight), organization_id, filters)
    stmt = stmt.order_by(Insight.created_at.desc(), Insight.id.desc()).limit(limit).offset(offset)
    rows = (await session.execute(stmt)).scalars().all()
    count_stmt = _apply_filters(select(func.count(Insight.id)), organization_id, filters)
    total = int((await session.execute(count_stmt)).scalar_one())
    return list(rows), total


async def get_insight(session: AsyncSession, organization_id: str, insight_id: str) -> Insight | None:
    # Return None for organization mismatch to keep 404 semantics.
    result = await session.execute(
        select(Insight).where(Insight.id == insight_id, tenant_predicate(Insight, organization_id))
    )
    return result.scalar_one_or_none()


async def list_delivery_channels(session: AsyncSession, insight_id: str) -> list[str]:
    result = await session.execute(
        select(InsightDelivery.channel)
        .where(InsightDelivery.insight_id == insight_id)
        .order_by(InsightDelivery.delivered_at, InsightDelivery.channel)
    )
    return list(result.scalars().all())


@dataclass(frozen=True)
class InsightStats:
    total: int
    delivered: int
    by_category: dict[str, int]
    by_priority: dict[str, int]
    by_rule: dict[str, int]


async def _grouped_counts(
    session: AsyncSession, column, organization_id: str, filters: InsightFilters
) -> dict[str, int]:
    stmt = _apply_filters(select(column, func.count(Insight.id)), organization_id, filters).group_by(column)
    return {str(key): int(count) for key, count in (await session.execute(stmt)).all()}


async def insight_stats(session: AsyncSession, organization_id: str, filters: InsightFilters) -> InsightStats:
    # Honors the same filters as list_insights.
    by_category = await _grouped_counts(session, Insight.category, organization_id, filters)
    delivered_stmt = _apply_filters(select(func.count(Insight.id)), organization_id, filters).where(
        Insight.delivered.is_(True)
    )
    return InsightStats(
        total=sum(by_category.values()),
        delivered=int((await session.execute(delivered_stmt)).scalar_one()),
        by_category=by_category,
        by_priority=await _grouped_counts(session, Insight.priority, organization_id, filters),
        by_rule=await _grouped_counts(session, Insight.rule, organization_id, filters),
    )
