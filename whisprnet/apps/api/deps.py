from __future__ import annotations

from typing import AsyncGenerator, Callable

from fastapi import Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.core.errors import ForbiddenError, NotFoundError, UnauthenticatedError, WhisprError
from whisprnet.services.audit import ANONYMOUS, AuditEventType, record_event
from whisprnet.services.auth.roles import role_allows
from whisprnet.services.auth.sessions import resolve_access_token


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request from the app-owned Database handle.
    async with request.app.state.database.session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated identity used for organization scoping and RBAC.
    subject_id: str
    organization_id: str | None
    role: str
    session_id: str
    # "user" or "admin": which login path minted the token.
    audience: str
    email: str


def _request_metadata(request: Request) -> dict[str, str]:
    return {"path": request.url.path, "method": request.method}


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise UnauthenticatedError("Missing bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthenticatedError("Missing or invalid bearer token")
    return parts[1]


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # Failed access attempts are audited; successful ones are too frequent to be worth a row.
    try:
        token = _parse_bearer_token(request.headers.get("Authorization"))
        resolved = await resolve_access_token(db, token)
    except WhisprError as exc:
        await record_event(
            db,
            AuditEventType.AUTH_ACCESS_FAILURE,
            actor=ANONYMOUS,
            organization_id=None,
            outcome="failure",
            request=request,
            resource=("auth", None),
            metadata=_request_metadata(request),
            error_code=exc.code,
        )
        raise
    user = resolved.user
    principal = Principal(
        subject_id=user.id,
        organization_id=user.organization_id,
        # The stored role wins over the token claim so demotions apply immediately.
        role=user.role,
        session_id=resolved.claims.session_id,
        audience=resolved.claims.audience,
        email=user.email,
    )
    request.state.principal = principal
    return principal


def require_role(minimum_role: str, *, audience: str | None = None) -> Callable[..., object]:
    # Single hierarchical check used by every protected route.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if audience is not None and principal.audience != audience:
            raise ForbiddenError("This route requires an administrator login")
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            raise ForbiddenError("Insufficient role for this operation")
        return principal

    return _dependency


def ensure_organization_scope(principal: Principal, organization_id: str) -> None:
    # Cross-organization access looks exactly like a missing resource.
    if principal.role == "super_admin":
        return
    if principal.organization_id != organization_id:
        raise NotFoundError("Organization not found")


def require_organization_member(minimum_role: str) -> Callable[..., object]:
    # Role check plus scope check against the {organization_id} path parameter.
    async def _dependency(
        organization_id: str,
        principal: Principal = Depends(require_role(minimum_role)),
    ) -> Principal:
        ensure_organization_scope(principal, organization_id)
        return principal

    return _dependency
