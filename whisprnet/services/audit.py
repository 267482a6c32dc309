from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
import re
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from whisprnet.domain.models import AuditEvent


logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Everything WhisprNet writes to the audit trail.

    Groups:
    - AUTH_*: sign-in, token refresh and credential changes
    - ORGANIZATION_* / USER_*: tenant administration
    - INTEGRATION_*: provider credentials and webhook secrets
    - WEBHOOK_*: inbound provider deliveries that were refused
    - INSIGHT_*: delivery of insights to a channel
    """

    AUTH_REGISTER = "auth.register"
    AUTH_LOGIN_SUCCESS = "auth.login.success"
    AUTH_LOGIN_FAILURE = "auth.login.failure"
    AUTH_REFRESH_FAILURE = "auth.refresh.failure"
    AUTH_ACCESS_FAILURE = "auth.access.failure"
    AUTH_LOGOUT = "auth.logout"
    AUTH_CREDENTIALS_UPDATE = "auth.credentials.update"

    ORGANIZATION_CREATE = "organizations.create"
    ORGANIZATION_UPDATE = "organizations.update"
    ORGANIZATION_DELETE = "organizations.delete"
    USER_CREATE = "users.create"
    USER_ROLE_CHANGE = "users.role.update"
    USER_DEACTIVATE = "users.deactivate"

    INTEGRATION_CREATE = "integrations.create"
    INTEGRATION_UPDATE = "integrations.update"
    INTEGRATION_DELETE = "integrations.delete"
    INTEGRATION_VERIFY = "integrations.verify"
    INTEGRATION_SECRET_ROTATE = "integrations.webhook_secret.rotate"

    WEBHOOK_REJECTED = "webhooks.rejected"

    INSIGHT_DELIVERED = "insights.delivered"


@dataclass(frozen=True)
class Actor:
    type: str
    id: str | None = None
    role: str | None = None

    @classmethod
    def of(cls, principal: Any) -> Actor:
        # Accepts the API Principal or a User row.
        subject_id = getattr(principal, "subject_id", None) or getattr(principal, "id", None)
        return cls(type="user", id=subject_id, role=getattr(principal, "role", None))


ANONYMOUS = Actor(type="anonymous")
# Inbound webhooks authenticate the provider, not a user.
PROVIDER = Actor(type="provider")

REDACTED = "[REDACTED]"
# Keys that name a credential, and value prefixes of the credentials WhisprNet handles.
_SECRET_KEY = re.compile(r"authorization|token|secret|password|private_key|credential", re.IGNORECASE)
_SECRET_VALUE = re.compile(r"^(bearer\s|ghp_|gho_|github_pat_|xox[abpr]-|wnrt_)", re.IGNORECASE)


def redact_metadata(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _SECRET_KEY.search(str(key)) else redact_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_metadata(item) for item in value]
    if isinstance(value, str) and _SECRET_VALUE.match(value):
        return REDACTED
    return value


@dataclass(frozen=True)
class RequestContext:
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_request(cls, request: Request | None) -> RequestContext:
        if request is None:
            return cls()
        return cls(
            request_id=getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id"),
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )


async def record_event(
    session: AsyncSession,
    event_type: AuditEventType | str,
    *,
    actor: Actor,
    organization_id: str | None,
    outcome: str = "success",
    request: Request | None = None,
    resource: tuple[str, str | None] | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = True,
    best_effort: bool = True,
) -> None:
    """Append one row to the audit trail.

    ``event_type`` must be an ``AuditEventType`` (or its value); unknown names
    raise ``ValueError`` before anything is written. Metadata is redacted by key
    and by credential-looking values. Storage errors are logged and swallowed
    unless ``best_effort`` is off, so auditing never fails the request it describes.
    """
    kind = AuditEventType(event_type)
    context = RequestContext.from_request(request)
    resource_type, resource_id = resource if resource is not None else (None, None)
    row = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        organization_id=organization_id,
        actor_type=actor.type,
        actor_id=actor.id,
        actor_role=actor.role,
        event_type=kind.value,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=context.request_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        metadata_json=redact_metadata(metadata or {}),
        error_code=error_code,
    )
    try:
        session.add(row)
        if commit:
            await session.commit()
    except SQLAlchemyError:
        if commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning(
            "audit.write_failed event_type=%s request_id=%s", kind.value, context.request_id, exc_info=True
        )
