from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.apps.api.deps import Principal, get_db, require_organization_member
from whisprnet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from whisprnet.apps.api.response import Page, SuccessEnvelope, page_response, success_response
from whisprnet.core.errors import MalformedPayloadError, NotFoundError
from whisprnet.domain.models import Insight
from whisprnet.persistence.repos.insights import (
    InsightFilters,
    get_insight,
    insight_stats,
    list_delivery_channels,
    list_insights,
)
from whisprnet.services.audit import Actor, AuditEventType, record_event
from whisprnet.services.delivery.tracker import mark_delivered


router = APIRouter(
    prefix="/organizations/{organization_id}/insights",
    tags=["insights"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class InsightResponse(BaseModel):
    id: str
    organization_id: str
    channel: str
    message: str
    priority: str
    category: str
    suggested_actions: list[str]
    delivered: bool
    rule: str
    window_start: str
    source_event_id: str | None
    created_at: str | None
    delivered_channels: list[str] | None = None


class DeliveryRequest(BaseModel):
    channel: str = Field(min_length=1, max_length=64)


class DeliveryResponse(BaseModel):
    insight: InsightResponse
    channel: str
    already_delivered: bool


class InsightStatsResponse(BaseModel):
    total: int
    delivered: int
    undelivered: int
    by_category: dict[str, int]
    by_priority: dict[str, int]
    by_rule: dict[str, int]


def insight_to_response(insight: Insight, *, delivered_channels: list[str] | None = None) -> InsightResponse:
    return InsightResponse(
        id=insight.id,
        organization_id=insight.organization_id,
        channel=insight.channel,
        message=insight.message,
        priority=insight.priority,
        category=insight.category,
        suggested_actions=list(insight.suggested_actions or []),
        delivered=insight.delivered,
        rule=insight.rule,
        window_start=insight.window_start.isoformat(),
        source_event_id=insight.source_event_id,
        created_at=insight.created_at.isoformat() if insight.created_at else None,
        delivered_channels=delivered_channels,
    )


@router.get("", response_model=SuccessEnvelope[Page[InsightResponse]])
async def list_organization_insights(
    organization_id: str,
    request: Request,
    channel: str | None = Query(default=None, max_length=200),
    category: Literal["insight", "warning", "alert", "suggestion"] | None = None,
    priority: Literal["low", "medium", "high", "critical"] | None = None,
    delivered: bool | None = None,
    created_after: datetime | None = None,
    created_before: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_organization_member("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if created_after is not None and created_before is not None and created_after >= created_before:
        raise MalformedPayloadError("created_after must be earlier than created_before")
    filters = InsightFilters(
        channel=channel,
        category=category,
        priority=priority,
        delivered=delivered,
        created_after=created_after,
        created_before=created_before,
    )
    rows, total = await list_insights(db, organization_id, filters, limit=limit, offset=offset)
    return page_response(
        request=request,
        items=[insight_to_response(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=SuccessEnvelope[InsightStatsResponse])
async def organization_insight_stats(
    organization_id: str,
    request: Request,
    channel: str | None = Query(default=None, max_length=200),
    created_after: datetime | None = None,
    created_before: datetime | None = None,
    principal: Principal = Depends(require_organization_member("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if created_after is not None and created_before is not None and created_after >= created_before:
        raise MalformedPayloadError("created_after must be earlier than created_before")
    filters = InsightFilters(channel=channel, created_after=created_after, created_before=created_before)
    stats = await insight_stats(db, organization_id, filters)
    data = InsightStatsResponse(
        total=stats.total,
        delivered=stats.delivered,
        undelivered=stats.total - stats.delivered,
        by_category=stats.by_category,
        by_priority=stats.by_priority,
        by_rule=stats.by_rule,
    )
    return success_response(request=request, data=data)


@router.get("/{insight_id}", response_model=SuccessEnvelope[InsightResponse])
async def get_organization_insight(
    organization_id: str,
    insight_id: str,
    request: Request,
    principal: Principal = Depends(require_organization_member("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    insight = await get_insight(db, organization_id, insight_id)
    if insight is None:
        raise NotFoundError("Insight not found")
    channels = await list_delivery_channels(db, insight.id)
    return success_response(request=request, data=insight_to_response(insight, delivered_channels=channels))


@router.post("/{insight_id}/deliveries", response_model=SuccessEnvelope[DeliveryResponse])
async def record_delivery(
    organization_id: str,
    insight_id: str,
    request: Request,
    payload: DeliveryRequest,
    principal: Principal = Depends(require_organization_member("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    outcome = await mark_delivered(
        db,
        organization_id=organization_id,
        insight_id=insight_id,
        channel=payload.channel,
    )
    channel = payload.channel.strip().lower()
    data = DeliveryResponse(
        insight=insight_to_response(outcome.insight),
        channel=channel,
        already_delivered=outcome.already_delivered,
    )
    if not outcome.already_delivered:
        await record_event(
            db,
            AuditEventType.INSIGHT_DELIVERED,
            actor=Actor.of(principal),
            organization_id=organization_id,
            request=request,
            resource=("insight", insight_id),
            metadata={"channel": channel},
        )
    return success_response(request=request, data=data)
