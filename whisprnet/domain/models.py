from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping the schema portable to SQLite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


def _new_id() -> str:
    return uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Plan tier drives nothing in the pipeline yet but is surfaced to admins.
    plan: Mapped[str] = mapped_column(String, default="free", nullable=False)
    # Deleted organizations stay as inactive rows so audit references remain valid.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # IANA timezone used to evaluate working hours for after-hours rules.
    timezone: Mapped[str] = mapped_column(String, default="UTC", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Only super admins live outside an organization.
    organization_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("organizations.id"), index=True, nullable=True
    )
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    # bcrypt hash; plaintext passwords never reach the database.
    password_hash: Mapped[str] = mapped_column(String)
    first_name: Mapped[str] = mapped_column(String, default="")
    last_name: Mapped[str] = mapped_column(String, default="")
    role: Mapped[str] = mapped_column(String, default="user", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    # One row per login; every rotated refresh token belongs to exactly one chain.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    # "user" or "admin"; tokens never cross from one login path to the other.
    audience: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(String, nullable=True)


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    session_id: Mapped[str] = mapped_column(String, ForeignKey("auth_sessions.id"), index=True)
    # Store only the SHA-256 of the opaque token.
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Set exactly once by the redemption that wins the conditional update.
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    replaced_by_id: Mapped[str | None] = mapped_column(String, nullable=True)


class IntegrationConfig(Base):
    __tablename__ = "integration_configs"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", name="uq_integration_configs_org_provider"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id"), index=True
    )
    provider: Mapped[str] = mapped_column(String)
    # AES-GCM envelope of the provider credential map, bound to org+provider via AAD.
    credentials_encrypted: Mapped[dict[str, Any]] = mapped_column(JSONType)
    # Bumped on every credential rotation; verification results only land on the version they checked.
    credentials_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    webhook_secret_encrypted: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    webhook_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    verification_state: Mapped[str] = mapped_column(String, default="unverified", nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Non-secret provider identity learned during verification.
    external_account: Mapped[str | None] = mapped_column(String, nullable=True)
    external_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    installation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subscribed_events: Mapped[list[str]] = mapped_column(JSONType, default=list)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("provider", "delivery_id", name="uq_webhook_deliveries_provider_delivery"),
        Index("ix_webhook_deliveries_status_received", "status", "received_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    provider: Mapped[str] = mapped_column(String)
    delivery_id: Mapped[str] = mapped_column(String)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String)
    payload_sha256: Mapped[str] = mapped_column(String)
    # queued -> processed | failed; ignored for unsupported event types.
    status: Mapped[str] = mapped_column(String, default="queued", nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("provider", "delivery_id", name="uq_events_provider_delivery"),
        Index("ix_events_org_channel_occurred", "organization_id", "channel", "occurred_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String)
    action: Mapped[str | None] = mapped_column(String, nullable=True)
    actor: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    delivery_id: Mapped[str] = mapped_column(String)
    payload_sha256: Mapped[str] = mapped_column(String)
    attributes: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)


class Insight(Base):
    __tablename__ = "insights"
    __table_args__ = (
        # Natural key that makes window re-evaluation idempotent.
        UniqueConstraint(
            "organization_id",
            "channel",
            "fingerprint",
            "window_start",
            name="uq_insights_natural_key",
        ),
        Index("ix_insights_org_created", "organization_id", "created_at"),
        Index("ix_insights_category_priority", "category", "priority"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id"), index=True
    )
    channel: Mapped[str] = mapped_column(String, index=True)
    message: Mapped[str] = mapped_column(Text)
    priority: Mapped[str] = mapped_column(String, default="medium", nullable=False)
    category: Mapped[str] = mapped_column(String, default="insight", nullable=False)
    suggested_actions: Mapped[list[str]] = mapped_column(JSONType, default=list)
    # Forward-only flag; the delivery tracker is the only writer.
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rule: Mapped[str] = mapped_column(String)
    fingerprint: Mapped[str] = mapped_column(String)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    source_event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class InsightDelivery(Base):
    __tablename__ = "insight_deliveries"
    __table_args__ = (
        UniqueConstraint("insight_id", "channel", name="uq_insight_deliveries_insight_channel"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    insight_id: Mapped[str] = mapped_column(String, ForeignKey("insights.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String)
    delivered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Allow null organization_id for pre-auth or platform events.
    organization_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    # Metadata is redacted before it is written.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
