from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.apps.api.deps import Principal, get_db, require_organization_member
from whisprnet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from whisprnet.apps.api.response import Page, SuccessEnvelope, page_response, success_response
from whisprnet.apps.api.routes.auth import UserResponse, user_to_response
from whisprnet.domain.models import User
from whisprnet.persistence.guards import tenant_predicate
from whisprnet.services.audit import Actor, AuditEventType, record_event
from whisprnet.services.auth.accounts import change_member_role, create_user, deactivate_member, get_member
from whisprnet.services.organizations import get_active_organization


router = APIRouter(
    prefix="/organizations/{organization_id}/users",
    tags=["users"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class CreateUserRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=1, max_length=256)
    role: Literal["user", "org_admin"] = "user"
    first_name: str = Field(default="", max_length=128)
    last_name: str = Field(default="", max_length=128)

    model_config = {"extra": "forbid"}


class UpdateUserRequest(BaseModel):
    role: Literal["user", "org_admin"]

    model_config = {"extra": "forbid"}


@router.get("", response_model=SuccessEnvelope[Page[UserResponse]])
async def list_users(
    organization_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_active_organization(db, organization_id)
    rows = (
        await db.execute(
            select(User)
            .where(tenant_predicate(User, organization_id))
            .order_by(User.created_at, User.id)
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    total = int(
        (await db.execute(select(func.count(User.id)).where(tenant_predicate(User, organization_id)))).scalar_one()
    )
    return page_response(
        request=request,
        items=[user_to_response(user) for user in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[UserResponse])
async def add_user(
    organization_id: str,
    request: Request,
    payload: CreateUserRequest,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_active_organization(db, organization_id)
    user = await create_user(
        db,
        email=payload.email,
        password=payload.password,
        role=payload.role,
        organization_id=organization_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    await db.commit()
    await record_event(
        db,
        AuditEventType.USER_CREATE,
        actor=Actor.of(principal),
        organization_id=organization_id,
        request=request,
        resource=("user", user.id),
        metadata={"role": user.role},
    )
    return success_response(request=request, data=user_to_response(user))


@router.get("/{user_id}", response_model=SuccessEnvelope[UserResponse])
async def get_user(
    organization_id: str,
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_active_organization(db, organization_id)
    user = await get_member(db, organization_id, user_id)
    return success_response(request=request, data=user_to_response(user))


@router.patch("/{user_id}", response_model=SuccessEnvelope[UserResponse])
async def update_user_role(
    organization_id: str,
    user_id: str,
    request: Request,
    payload: UpdateUserRequest,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_active_organization(db, organization_id)
    user, previous = await change_member_role(
        db,
        organization_id=organization_id,
        user_id=user_id,
        role=payload.role,
        actor_id=principal.subject_id,
    )
    if previous != user.role:
        await record_event(
            db,
            AuditEventType.USER_ROLE_CHANGE,
            actor=Actor.of(principal),
            organization_id=organization_id,
            request=request,
            resource=("user", user.id),
            metadata={"from": previous, "to": user.role},
        )
    return success_response(request=request, data=user_to_response(user))


@router.post("/{user_id}/deactivate", response_model=SuccessEnvelope[UserResponse])
async def deactivate_user(
    organization_id: str,
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_active_organization(db, organization_id)
    user = await deactivate_member(
        db, organization_id=organization_id, user_id=user_id, actor_id=principal.subject_id
    )
    await record_event(
        db,
        AuditEventType.USER_DEACTIVATE,
        actor=Actor.of(principal),
        organization_id=organization_id,
        request=request,
        resource=("user", user.id),
    )
    return success_response(request=request, data=user_to_response(user))
