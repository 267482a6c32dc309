from __future__ import annotations

from datetime import datetime
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.apps.api.deps import Principal, get_current_principal, get_db
from whisprnet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from whisprnet.apps.api.response import SuccessEnvelope, success_response
from whisprnet.core.errors import InvalidTokenError, MalformedPayloadError, WhisprError
from whisprnet.domain.models import Organization, User
from whisprnet.services.audit import ANONYMOUS, Actor, AuditEventType, record_event
from whisprnet.services.auth.accounts import authenticate, register, update_credentials
from whisprnet.services.auth.sessions import (
    TokenPair,
    find_session_for_refresh_token,
    revoke_session,
    rotate_refresh_token,
)


router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: str
    refresh_token: str
    refresh_expires_at: str
    session_id: str


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    organization_id: str | None
    is_active: bool
    last_login_at: str | None
    created_at: str | None


class OrganizationResponse(BaseModel):
    id: str
    name: str
    slug: str
    plan: str
    timezone: str
    is_active: bool
    created_at: str | None


class SessionResponse(BaseModel):
    user: UserResponse
    organization: OrganizationResponse | None = None
    tokens: TokenResponse


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=1, max_length=256)
    first_name: str = Field(default="", max_length=128)
    last_name: str = Field(default="", max_length=128)
    organization_name: str = Field(min_length=1, max_length=200)
    plan: Literal["free", "basic", "professional", "enterprise"] = "free"
    timezone: str = "UTC"

    model_config = {"extra": "forbid"}

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        return validate_timezone(value)


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=256)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class CredentialsRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=256)
    email: str | None = Field(default=None, min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str | None = Field(default=None, min_length=1, max_length=256)

    model_config = {"extra": "forbid"}


def validate_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {value}") from exc
    return value


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name or "",
        last_name=user.last_name or "",
        role=user.role,
        organization_id=user.organization_id,
        is_active=user.is_active,
        last_login_at=_iso(user.last_login_at),
        created_at=_iso(user.created_at),
    )


def organization_to_response(organization: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=organization.id,
        name=organization.name,
        slug=organization.slug,
        plan=organization.plan,
        timezone=organization.timezone,
        is_active=organization.is_active,
        created_at=_iso(organization.created_at),
    )


def _tokens_to_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        expires_at=pair.access_expires_at.isoformat(),
        refresh_token=pair.refresh_token,
        refresh_expires_at=pair.refresh_expires_at.isoformat(),
        session_id=pair.session_id,
    )


@router.post("/register", status_code=201, response_model=SuccessEnvelope[SessionResponse])
async def register_account(
    request: Request,
    payload: RegisterRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    user, organization, pair = await register(
        db,
        email=payload.email,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
        organization_name=payload.organization_name,
        plan=payload.plan,
        timezone_name=payload.timezone,
    )
    await record_event(
        db,
        AuditEventType.AUTH_REGISTER,
        actor=Actor.of(user),
        organization_id=organization.id,
        request=request,
        resource=("organization", organization.id),
    )
    data = SessionResponse(
        user=user_to_response(user),
        organization=organization_to_response(organization),
        tokens=_tokens_to_response(pair),
    )
    return success_response(request=request, data=data)


async def _login(request: Request, payload: LoginRequest, db: AsyncSession, *, audience: str) -> dict:
    try:
        user, pair = await authenticate(db, email=payload.email, password=payload.password, audience=audience)
    except WhisprError as exc:
        await record_event(
            db,
            AuditEventType.AUTH_LOGIN_FAILURE,
            actor=ANONYMOUS,
            organization_id=None,
            outcome="failure",
            request=request,
            resource=("auth", None),
            metadata={"audience": audience},
            error_code=exc.code,
        )
        raise
    await record_event(
        db,
        AuditEventType.AUTH_LOGIN_SUCCESS,
        actor=Actor.of(user),
        organization_id=user.organization_id,
        request=request,
        resource=("auth", None),
        metadata={"audience": audience},
    )
    data = SessionResponse(user=user_to_response(user), tokens=_tokens_to_response(pair))
    return success_response(request=request, data=data)


@router.post("/login", response_model=SuccessEnvelope[SessionResponse])
async def login(request: Request, payload: LoginRequest, db: AsyncSession = Depends(get_db)) -> dict:
    return await _login(request, payload, db, audience="user")


@router.post("/admin/login", response_model=SuccessEnvelope[SessionResponse])
async def admin_login(request: Request, payload: LoginRequest, db: AsyncSession = Depends(get_db)) -> dict:
    # Separate path; the only place admin-audience tokens are minted.
    return await _login(request, payload, db, audience="admin")


@router.post("/refresh", response_model=SuccessEnvelope[TokenResponse])
async def refresh(request: Request, payload: RefreshRequest, db: AsyncSession = Depends(get_db)) -> dict:
    try:
        pair, user = await rotate_refresh_token(db, payload.refresh_token)
    except InvalidTokenError as exc:
        await record_event(
            db,
            AuditEventType.AUTH_REFRESH_FAILURE,
            actor=ANONYMOUS,
            organization_id=None,
            outcome="failure",
            request=request,
            resource=("auth", None),
            error_code=exc.code,
        )
        raise
    return success_response(request=request, data=_tokens_to_response(pair))


@router.get("/me", response_model=SuccessEnvelope[UserResponse])
async def me(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await db.get(User, principal.subject_id)
    return success_response(request=request, data=user_to_response(user))


class LogoutRequest(BaseModel):
    # Optional: also accepts the refresh token when the access token is already gone.
    refresh_token: str | None = None


@router.post("/logout", response_model=SuccessEnvelope[dict])
async def logout(
    request: Request,
    payload: LogoutRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    session_ids = {principal.session_id}
    if payload is not None and payload.refresh_token:
        refresh_session = await find_session_for_refresh_token(db, payload.refresh_token)
        if refresh_session is not None and refresh_session.user_id == principal.subject_id:
            session_ids.add(refresh_session.id)
    for session_id in sorted(session_ids):
        await revoke_session(db, session_id, reason="logout")
    await db.commit()
    await record_event(
        db,
        AuditEventType.AUTH_LOGOUT,
        actor=Actor.of(principal),
        organization_id=principal.organization_id,
        request=request,
        resource=("auth_session", principal.session_id),
    )
    return success_response(request=request, data={"revoked": True})


@router.put("/credentials", response_model=SuccessEnvelope[UserResponse])
async def change_credentials(
    request: Request,
    payload: CredentialsRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.email is None and payload.password is None:
        raise MalformedPayloadError("Provide a new email, a new password, or both")
    user = await db.get(User, principal.subject_id)
    user = await update_credentials(
        db,
        user=user,
        current_password=payload.current_password,
        current_session_id=principal.session_id,
        new_email=payload.email,
        new_password=payload.password,
    )
    await record_event(
        db,
        AuditEventType.AUTH_CREDENTIALS_UPDATE,
        actor=Actor.of(principal),
        organization_id=principal.organization_id,
        request=request,
        resource=("user", principal.subject_id),
        metadata={"fields": [name for name in ("email", "password") if getattr(payload, name) is not None]},
    )
    return success_response(request=request, data=user_to_response(user))
