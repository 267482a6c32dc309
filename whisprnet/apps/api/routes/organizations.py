from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.apps.api.deps import Principal, get_db, require_organization_member
from whisprnet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from whisprnet.apps.api.response import SuccessEnvelope, success_response
from whisprnet.apps.api.routes.auth import OrganizationResponse, organization_to_response, validate_timezone
from whisprnet.services.audit import Actor, AuditEventType, record_event
from whisprnet.services.organizations import get_active_organization, update_organization


router = APIRouter(
    prefix="/organizations/{organization_id}",
    tags=["organizations"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class UpdateOrganizationRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    plan: Literal["free", "basic", "professional", "enterprise"] | None = None
    timezone: str | None = None

    model_config = {"extra": "forbid"}

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str | None) -> str | None:
        return validate_timezone(value) if value is not None else None


@router.get("", response_model=SuccessEnvelope[OrganizationResponse])
async def get_organization(
    organization_id: str,
    request: Request,
    principal: Principal = Depends(require_organization_member("user")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organization = await get_active_organization(db, organization_id)
    return success_response(request=request, data=organization_to_response(organization))


@router.patch("", response_model=SuccessEnvelope[OrganizationResponse])
async def patch_organization(
    organization_id: str,
    request: Request,
    payload: UpdateOrganizationRequest,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organization, changed = await update_organization(
        db,
        organization_id,
        name=payload.name,
        plan=payload.plan,
        timezone_name=payload.timezone,
    )
    if changed:
        await record_event(
            db,
            AuditEventType.ORGANIZATION_UPDATE,
            actor=Actor.of(principal),
            organization_id=organization_id,
            request=request,
            resource=("organization", organization_id),
            metadata={"fields": changed},
        )
    return success_response(request=request, data=organization_to_response(organization))
