from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.apps.api.deps import Principal, get_db, require_organization_member
from whisprnet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from whisprnet.apps.api.response import SuccessEnvelope, success_response
from whisprnet.core.errors import IntegrationVerificationError, MalformedPayloadError, NotFoundError
from whisprnet.domain.models import IntegrationConfig
from whisprnet.persistence.guards import tenant_predicate
from whisprnet.services.audit import Actor, AuditEventType, record_event
from whisprnet.services.integrations import store
from whisprnet.services.integrations.providers import PROVIDERS
from whisprnet.services.normalizer import NORMALIZERS


router = APIRouter(
    prefix="/organizations/{organization_id}/integrations",
    tags=["integrations"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class IntegrationResponse(BaseModel):
    id: str
    organization_id: str
    provider: str
    credentials: dict[str, Any]
    has_webhook_secret: bool
    webhook_enabled: bool
    verification_state: str
    verified_at: str | None
    verification_error: str | None
    external_account: str | None
    external_account_id: str | None
    installation_id: str | None
    subscribed_events: list[str]
    last_synced_at: str | None
    created_at: str | None
    updated_at: str | None


class IntegrationWithSecretResponse(BaseModel):
    integration: IntegrationResponse
    # Plaintext secret, returned only by create and rotate.
    webhook_secret: str | None = None


class CreateIntegrationRequest(BaseModel):
    credentials: dict[str, str]
    webhook_secret: str | None = Field(default=None, min_length=16, max_length=256)
    webhook_enabled: bool = True
    subscribed_events: list[str] | None = None
    installation_id: str | None = Field(default=None, max_length=128)

    model_config = {"extra": "forbid"}


class UpdateIntegrationRequest(BaseModel):
    credentials: dict[str, str] | None = None
    webhook_enabled: bool | None = None
    subscribed_events: list[str] | None = None
    installation_id: str | None = Field(default=None, max_length=128)

    model_config = {"extra": "forbid"}


class RotateSecretRequest(BaseModel):
    webhook_secret: str | None = Field(default=None, min_length=16, max_length=256)


def _provider(provider: str) -> str:
    normalized = provider.strip().lower()
    if normalized not in PROVIDERS:
        raise NotFoundError(f"Unknown provider: {provider}")
    return normalized


def _subscribed_events(provider: str, events: list[str] | None) -> list[str] | None:
    if events is None:
        return None
    supported = NORMALIZERS.get(provider, {})
    unknown = sorted({event for event in events if event not in supported})
    if unknown:
        raise MalformedPayloadError(f"Unsupported event types: {', '.join(unknown)}")
    return sorted(set(events))


def _to_response(config: IntegrationConfig) -> IntegrationResponse:
    return IntegrationResponse(**store.sanitize_config(config))


async def _audit(
    db: AsyncSession,
    request: Request,
    principal: Principal,
    *,
    organization_id: str,
    event_type: AuditEventType,
    config_id: str | None,
    provider: str,
    outcome: str = "success",
    error_code: str | None = None,
) -> None:
    await record_event(
        db,
        event_type,
        actor=Actor.of(principal),
        organization_id=organization_id,
        outcome=outcome,
        request=request,
        resource=("integration_config", config_id),
        metadata={"provider": provider},
        error_code=error_code,
    )


@router.get("", response_model=SuccessEnvelope[list[IntegrationResponse]])
async def list_integrations(
    organization_id: str,
    request: Request,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await db.execute(
        select(IntegrationConfig)
        .where(tenant_predicate(IntegrationConfig, organization_id))
        .order_by(IntegrationConfig.provider)
    )
    return success_response(request=request, data=[_to_response(config) for config in result.scalars().all()])


@router.get("/{provider}", response_model=SuccessEnvelope[IntegrationResponse])
async def get_integration(
    organization_id: str,
    provider: str,
    request: Request,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    config = await store.get_config(db, organization_id, _provider(provider))
    return success_response(request=request, data=_to_response(config))


@router.post("/{provider}", status_code=201, response_model=SuccessEnvelope[IntegrationWithSecretResponse])
async def create_integration(
    organization_id: str,
    provider: str,
    request: Request,
    payload: CreateIntegrationRequest,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    provider = _provider(provider)
    config, secret_plain = await store.create_config(
        db,
        organization_id=organization_id,
        provider=provider,
        credentials=payload.credentials,
        webhook_secret=payload.webhook_secret,
        webhook_enabled=payload.webhook_enabled,
        subscribed_events=_subscribed_events(provider, payload.subscribed_events),
        installation_id=payload.installation_id,
    )
    data = IntegrationWithSecretResponse(integration=_to_response(config), webhook_secret=secret_plain)
    await _audit(
        db,
        request,
        principal,
        organization_id=organization_id,
        event_type=AuditEventType.INTEGRATION_CREATE,
        config_id=config.id,
        provider=provider,
    )
    return success_response(request=request, data=data)


@router.patch("/{provider}", response_model=SuccessEnvelope[IntegrationResponse])
async def update_integration(
    organization_id: str,
    provider: str,
    request: Request,
    payload: UpdateIntegrationRequest,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    provider = _provider(provider)
    config = await store.update_config(
        db,
        organization_id=organization_id,
        provider=provider,
        credentials=payload.credentials,
        webhook_enabled=payload.webhook_enabled,
        subscribed_events=_subscribed_events(provider, payload.subscribed_events),
        installation_id=payload.installation_id,
    )
    data = _to_response(config)
    await _audit(
        db,
        request,
        principal,
        organization_id=organization_id,
        event_type=AuditEventType.INTEGRATION_UPDATE,
        config_id=config.id,
        provider=provider,
    )
    return success_response(request=request, data=data)


@router.delete("/{provider}", response_model=SuccessEnvelope[dict])
async def delete_integration(
    organization_id: str,
    provider: str,
    request: Request,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    provider = _provider(provider)
    await store.delete_config(db, organization_id=organization_id, provider=provider)
    await _audit(
        db,
        request,
        principal,
        organization_id=organization_id,
        event_type=AuditEventType.INTEGRATION_DELETE,
        config_id=None,
        provider=provider,
    )
    return success_response(request=request, data={"deleted": True, "provider": provider})


@router.post("/{provider}/verify", response_model=SuccessEnvelope[IntegrationResponse])
async def verify_integration(
    organization_id: str,
    provider: str,
    request: Request,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    provider = _provider(provider)
    config, outcome = await store.verify_config(
        db,
        organization_id=organization_id,
        provider=provider,
        transport=request.app.state.http_transport,
    )
    data = _to_response(config)
    await _audit(
        db,
        request,
        principal,
        organization_id=organization_id,
        event_type=AuditEventType.INTEGRATION_VERIFY,
        config_id=config.id,
        provider=provider,
        outcome="success" if outcome.ok else "failure",
        error_code=None if outcome.ok else IntegrationVerificationError.code,
    )
    if not outcome.ok:
        # The failed state is already persisted; the caller also gets the reason.
        raise IntegrationVerificationError(
            outcome.error or "Provider rejected the supplied credentials",
            details={"verification_state": data.verification_state},
        )
    return success_response(request=request, data=data)


@router.post("/{provider}/webhook-secret", response_model=SuccessEnvelope[IntegrationWithSecretResponse])
async def rotate_webhook_secret(
    organization_id: str,
    provider: str,
    request: Request,
    payload: RotateSecretRequest | None = None,
    principal: Principal = Depends(require_organization_member("org_admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    provider = _provider(provider)
    config, secret_plain = await store.rotate_webhook_secret(
        db,
        organization_id=organization_id,
        provider=provider,
        webhook_secret=payload.webhook_secret if payload is not None else None,
    )
    data = IntegrationWithSecretResponse(integration=_to_response(config), webhook_secret=secret_plain)
    await _audit(
        db,
        request,
        principal,
        organization_id=organization_id,
        event_type=AuditEventType.INTEGRATION_SECRET_ROTATE,
        config_id=config.id,
        provider=provider,
    )
    return success_response(request=request, data=data)
