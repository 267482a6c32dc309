from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import secrets
from typing import Any

import httpx
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.core.errors import ConflictError, NotFoundError
from whisprnet.domain.models import IntegrationConfig, Organization
from whisprnet.persistence.guards import tenant_predicate
from whisprnet.services.crypto.credentials import (
    CredentialDecryptError,
    decrypt_json,
    decrypt_secret,
    encrypt_json,
    encrypt_secret,
)
from whisprnet.services.integrations.providers import (
    DEFAULT_GITHUB_EVENTS,
    VERIFIERS,
    VerificationOutcome,
    validate_credentials,
)


logger = logging.getLogger(__name__)

VERIFICATION_STATES: tuple[str, ...] = ("unverified", "verified", "failed")
# Providers that receive inbound webhooks and therefore need a signing secret.
_WEBHOOK_PROVIDERS = frozenset({"github"})


@dataclass(frozen=True)
class WebhookSecretSnapshot:
    # Immutable view used for one signature verification, so rotation cannot change it mid-check.
    organization_id: str
    provider: str
    secret: str | None
    verification_state: str
    webhook_enabled: bool
    organization_active: bool
    subscribed_events: tuple[str, ...]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_webhook_secret() -> str:
    return secrets.token_urlsafe(32)


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****{value[-4:]}"


def sanitize_config(config: IntegrationConfig) -> dict[str, Any]:
    # Never return secrets; identifiers are masked and secret presence is a boolean.
    credentials = decrypt_credentials(config)
    masked: dict[str, Any] = {}
    for key, value in credentials.items():
        if key in {"client_id", "app_id", "channel"}:
            masked[key] = value if key == "channel" else _mask(value)
        else:
            masked[f"has_{key}"] = True
    return {
        "id": config.id,
        "organization_id": config.organization_id,
        "provider": config.provider,
        "credentials": masked,
        "has_webhook_secret": config.webhook_secret_encrypted is not None,
        "webhook_enabled": config.webhook_enabled,
        "verification_state": config.verification_state,
        "verified_at": config.verified_at.isoformat() if config.verified_at else None,
        "verification_error": config.verification_error,
        "external_account": config.external_account,
        "external_account_id": config.external_account_id,
        "installation_id": config.installation_id,
        "subscribed_events": list(config.subscribed_events or []),
        "last_synced_at": config.last_synced_at.isoformat() if config.last_synced_at else None,
        "created_at": config.created_at.isoformat() if config.created_at else None,
        "updated_at": config.updated_at.isoformat() if config.updated_at else None,
    }


def decrypt_credentials(config: IntegrationConfig) -> dict[str, str]:
    return decrypt_json(
        config.credentials_encrypted,
        organization_id=config.organization_id,
        provider=config.provider,
    )


async def get_config(db: AsyncSession, organization_id: str, provider: str) -> IntegrationConfig:
    result = await db.execute(
        select(IntegrationConfig).where(
            tenant_predicate(IntegrationConfig, organization_id),
            IntegrationConfig.provider == provider,
        )
    )
    config = result.scalar_one_or_none()
    if config is None:
        raise NotFoundError(f"No {provider} integration configured")
    return config


async def find_verified_config(
    db: AsyncSession, organization_id: str, provider: str
) -> IntegrationConfig | None:
    result = await db.execute(
        select(IntegrationConfig).where(
            tenant_predicate(IntegrationConfig, organization_id),
            IntegrationConfig.provider == provider,
            IntegrationConfig.verification_state == "verified",
        )
    )
    return result.scalar_one_or_none()


async def create_config(
    db: AsyncSession,
    *,
    organization_id: str,
    provider: str,
    credentials: dict[str, Any],
    webhook_secret: str | None = None,
    webhook_enabled: bool = True,
    subscribed_events: list[str] | None = None,
    installation_id: str | None = None,
) -> tuple[IntegrationConfig, str | None]:
    """Create the single config for (organization, provider).

    Returns the config and, for webhook providers, the plaintext webhook secret so it
    can be shown to the caller exactly once.
    """
    cleaned = validate_credentials(provider, credentials)
    secret_plain: str | None = None
    secret_envelope: dict[str, Any] | None = None
    if provider in _WEBHOOK_PROVIDERS:
        secret_plain = webhook_secret or generate_webhook_secret()
        secret_envelope = encrypt_secret(secret_plain, organization_id=organization_id, provider=provider)
    if subscribed_events is None:
        subscribed_events = list(DEFAULT_GITHUB_EVENTS) if provider == "github" else []
    config = IntegrationConfig(
        organization_id=organization_id,
        provider=provider,
        credentials_encrypted=encrypt_json(cleaned, organization_id=organization_id, provider=provider),
        credentials_version=1,
        webhook_secret_encrypted=secret_envelope,
        webhook_enabled=webhook_enabled,
        verification_state="unverified",
        subscribed_events=subscribed_events,
        installation_id=installation_id,
    )
    db.add(config)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(f"A {provider} integration already exists for this organization") from exc
    logger.info("integration.created organization_id=%s provider=%s", organization_id, provider)
    return config, secret_plain


async def update_config(
    db: AsyncSession,
    *,
    organization_id: str,
    provider: str,
    credentials: dict[str, Any] | None = None,
    webhook_enabled: bool | None = None,
    subscribed_events: list[str] | None = None,
    installation_id: str | None = None,
) -> IntegrationConfig:
    # Credential rotation merges fields and drops the config back to unverified.
    config = await get_config(db, organization_id, provider)
    if credentials:
        merged = decrypt_credentials(config)
        merged.update(validate_credentials(provider, credentials, partial=True))
        validate_credentials(provider, merged)
        config.credentials_encrypted = encrypt_json(merged, organization_id=organization_id, provider=provider)
        config.credentials_version = config.credentials_version + 1
        config.verification_state = "unverified"
        config.verified_at = None
        config.verification_error = None
    if webhook_enabled is not None:
        config.webhook_enabled = webhook_enabled
    if subscribed_events is not None:
        config.subscribed_events = subscribed_events
    if installation_id is not None:
        config.installation_id = installation_id
    await db.commit()
    return config


async def rotate_webhook_secret(
    db: AsyncSession, *, organization_id: str, provider: str, webhook_secret: str | None = None
) -> tuple[IntegrationConfig, str]:
    config = await get_config(db, organization_id, provider)
    if provider not in _WEBHOOK_PROVIDERS:
        raise NotFoundError(f"{provider} integrations have no webhook secret")
    secret_plain = webhook_secret or generate_webhook_secret()
    config.webhook_secret_encrypted = encrypt_secret(
        secret_plain, organization_id=organization_id, provider=provider
    )
    await db.commit()
    logger.info("integration.webhook_secret_rotated organization_id=%s provider=%s", organization_id, provider)
    return config, secret_plain


async def delete_config(db: AsyncSession, *, organization_id: str, provider: str) -> None:
    config = await get_config(db, organization_id, provider)
    await db.delete(config)
    await db.commit()
    logger.info("integration.deleted organization_id=%s provider=%s", organization_id, provider)


async def delete_organization_configs(db: AsyncSession, organization_id: str) -> None:
    await db.execute(
        delete(IntegrationConfig).where(tenant_predicate(IntegrationConfig, organization_id))
    )


async def verify_config(
    db: AsyncSession,
    *,
    organization_id: str,
    provider: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[IntegrationConfig, VerificationOutcome]:
    """Run a live credential check and record the outcome.

    The result is written with a conditional update on ``credentials_version`` so a
    rotation that lands while the provider call is in flight keeps its own
    ``unverified`` state instead of inheriting a verdict about the old credentials.
    """
    config = await get_config(db, organization_id, provider)
    credentials = decrypt_credentials(config)
    checked_version = config.credentials_version
    config_id = config.id
    # Release the read transaction before the slow provider call.
    await db.commit()
    outcome = await VERIFIERS[provider](credentials, transport=transport)
    now = _utc_now()
    values: dict[str, Any] = {
        "verification_state": "verified" if outcome.ok else "failed",
        "verified_at": now if outcome.ok else None,
        "verification_error": outcome.error,
        "last_synced_at": now,
    }
    if outcome.ok:
        values["external_account"] = outcome.external_account
        values["external_account_id"] = outcome.external_account_id
    result = await db.execute(
        update(IntegrationConfig)
        .where(
            IntegrationConfig.id == config_id,
            IntegrationConfig.credentials_version == checked_version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        logger.info(
            "integration.verify_superseded organization_id=%s provider=%s version=%s",
            organization_id,
            provider,
            checked_version,
        )
    logger.info(
        "integration.verified organization_id=%s provider=%s ok=%s",
        organization_id,
        provider,
        outcome.ok,
    )
    refreshed = await db.get(IntegrationConfig, config_id, populate_existing=True)
    if refreshed is None:
        raise NotFoundError(f"No {provider} integration configured")
    return refreshed, outcome


async def load_webhook_snapshot(
    db: AsyncSession, *, organization_id: str, provider: str
) -> WebhookSecretSnapshot | None:
    # One statement reads the config and organization state together.
    result = await db.execute(
        select(IntegrationConfig, Organization.is_active)
        .join(Organization, Organization.id == IntegrationConfig.organization_id)
        .where(
            tenant_predicate(IntegrationConfig, organization_id),
            IntegrationConfig.provider == provider,
        )
    )
    row = result.first()
    if row is None:
        return None
    config, organization_active = row
    secret = None
    if config.webhook_secret_encrypted is not None:
        try:
            secret = decrypt_secret(
                config.webhook_secret_encrypted,
                organization_id=config.organization_id,
                provider=config.provider,
            )
        except CredentialDecryptError:
            # An unreadable secret verifies nothing; the receiver rejects the delivery.
            logger.warning(
                "integration.webhook_secret_unreadable organization_id=%s provider=%s",
                organization_id,
                provider,
            )
    return WebhookSecretSnapshot(
        organization_id=config.organization_id,
        provider=config.provider,
        secret=secret,
        verification_state=config.verification_state,
        webhook_enabled=config.webhook_enabled,
        organization_active=bool(organization_active),
        subscribed_events=tuple(config.subscribed_events or ()),
    )
