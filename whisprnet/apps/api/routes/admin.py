from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.apps.api.deps import Principal, get_db, require_role
from whisprnet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from whisprnet.apps.api.response import Page, SuccessEnvelope, page_response, success_response
from whisprnet.apps.api.routes.auth import (
    OrganizationResponse,
    organization_to_response,
    validate_timezone,
)
from whisprnet.persistence.repos.events import delivery_status_counts
from whisprnet.services.audit import Actor, AuditEventType, record_event
from whisprnet.services.auth.accounts import create_organization
from whisprnet.services.organizations import delete_organization, list_organizations
from whisprnet.services.telemetry import counters_snapshot, external_call_summary, latency_summary


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)

# Platform routes only accept tokens minted by the admin login path.
require_platform_admin = require_role("super_admin", audience="admin")


class CreateOrganizationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    plan: Literal["free", "basic", "professional", "enterprise"] = "free"
    timezone: str = "UTC"

    model_config = {"extra": "forbid"}

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        return validate_timezone(value)


class OrganizationDeletionResponse(BaseModel):
    organization_id: str
    deleted: bool
    insights: int
    events: int
    deliveries: int
    users_deactivated: int


class PipelineStatusResponse(BaseModel):
    execution_mode: str
    queue_depth: int | None
    deliveries: dict[str, int]
    counters: dict[str, int]
    webhook_latency: dict[str, Any]
    external_calls: dict[str, dict[str, int]]
    db_pool: dict[str, int | None]


@router.get("/organizations", response_model=SuccessEnvelope[Page[OrganizationResponse]])
async def list_all_organizations(
    request: Request,
    include_inactive: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows, total = await list_organizations(db, include_inactive=include_inactive, limit=limit, offset=offset)
    return page_response(
        request=request,
        items=[organization_to_response(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/organizations", status_code=201, response_model=SuccessEnvelope[OrganizationResponse])
async def create_platform_organization(
    request: Request,
    payload: CreateOrganizationRequest,
    principal: Principal = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organization = await create_organization(
        db, name=payload.name, plan=payload.plan, timezone_name=payload.timezone
    )
    await db.commit()
    await record_event(
        db,
        AuditEventType.ORGANIZATION_CREATE,
        actor=Actor.of(principal),
        organization_id=organization.id,
        request=request,
        resource=("organization", organization.id),
    )
    return success_response(request=request, data=organization_to_response(organization))


@router.delete(
    "/organizations/{organization_id}",
    response_model=SuccessEnvelope[OrganizationDeletionResponse],
)
async def delete_platform_organization(
    organization_id: str,
    request: Request,
    principal: Principal = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summary = await delete_organization(db, organization_id)
    await record_event(
        db,
        AuditEventType.ORGANIZATION_DELETE,
        actor=Actor.of(principal),
        organization_id=organization_id,
        request=request,
        resource=("organization", organization_id),
        metadata={"users_deactivated": summary.users_deactivated},
    )
    data = OrganizationDeletionResponse(
        organization_id=organization_id,
        deleted=True,
        insights=summary.insights,
        events=summary.events,
        deliveries=summary.deliveries,
        users_deactivated=summary.users_deactivated,
    )
    return success_response(request=request, data=data)


@router.get("/pipeline", response_model=SuccessEnvelope[PipelineStatusResponse])
async def pipeline_status(
    request: Request,
    principal: Principal = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Operator view over the ingest queue, the delivery ledger and in-process counters.
    state = request.app.state
    data = PipelineStatusResponse(
        execution_mode=state.settings.pipeline_execution_mode,
        queue_depth=await state.event_queue.depth(),
        deliveries=await delivery_status_counts(db),
        counters=counters_snapshot(),
        webhook_latency=latency_summary(path_prefix="/v1/integrations/github/events"),
        external_calls=external_call_summary(),
        db_pool=state.database.pool_stats(),
    )
    return success_response(request=request, data=data)
