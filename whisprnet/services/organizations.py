from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.core.errors import ConflictError, MalformedPayloadError, NotFoundError
from whisprnet.domain.models import (
    Event,
    Insight,
    InsightDelivery,
    Organization,
    User,
    WebhookDelivery,
)
from whisprnet.persistence.guards import tenant_predicate
from whisprnet.services.auth.sessions import revoke_organization_sessions
from whisprnet.services.integrations.store import delete_organization_configs


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeletionSummary:
    organization_id: str
    insights: int
    events: int
    deliveries: int
    users_deactivated: int


async def list_organizations(
    db: AsyncSession, *, include_inactive: bool = False, limit: int, offset: int
) -> tuple[list[Organization], int]:
    stmt = select(Organization)
    count_stmt = select(func.count(Organization.id))
    if not include_inactive:
        stmt = stmt.where(Organization.is_active.is_(True))
        count_stmt = count_stmt.where(Organization.is_active.is_(True))
    rows = (
        await db.execute(stmt.order_by(Organization.created_at, Organization.id).limit(limit).offset(offset))
    ).scalars().all()
    total = int((await db.execute(count_stmt)).scalar_one())
    return list(rows), total


async def delete_organization(db: AsyncSession, organization_id: str) -> DeletionSummary:
    """Retire an organization and everything it owns.

    Credentials, events, insights and delivery records are removed; users are
    deactivated and every session they hold is revoked. The organization row is
    kept inactive so audit history still resolves, and webhooks addressed to it
    fail authentication from then on.
    """
    organization = await db.get(Organization, organization_id)
    if organization is None or not organization.is_active:
        raise NotFoundError("Organization not found")

    await delete_organization_configs(db, organization_id)
    await db.execute(delete(InsightDelivery).where(tenant_predicate(InsightDelivery, organization_id)))
    insights = await db.execute(delete(Insight).where(tenant_predicate(Insight, organization_id)))
    events = await db.execute(delete(Event).where(tenant_predicate(Event, organization_id)))
    deliveries = await db.execute(
        delete(WebhookDelivery).where(tenant_predicate(WebhookDelivery, organization_id))
    )
    await revoke_organization_sessions(db, organization_id, reason="organization_deleted")
    users = await db.execute(
        update(User)
        .where(tenant_predicate(User, organization_id), User.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    organization.is_active = False
    await db.commit()

    summary = DeletionSummary(
        organization_id=organization_id,
        insights=int(insights.rowcount or 0),
        events=int(events.rowcount or 0),
        deliveries=int(deliveries.rowcount or 0),
        users_deactivated=int(users.rowcount or 0),
    )
    logger.info(
        "organization.deleted organization_id=%s insights=%s events=%s deliveries=%s users=%s",
        organization_id,
        summary.insights,
        summary.events,
        summary.deliveries,
        summary.users_deactivated,
    )
    return summary


async def get_active_organization(db: AsyncSession, organization_id: str) -> Organization:
    organization = await db.get(Organization, organization_id)
    if organization is None or not organization.is_active:
        raise NotFoundError("Organization not found")
    return organization


async def update_organization(
    db: AsyncSession,
    organization_id: str,
    *,
    name: str | None = None,
    plan: str | None = None,
    timezone_name: str | None = None,
) -> tuple[Organization, list[str]]:
    """Apply the given settings and return the organization plus the changed field names.

    Names are unique among active organizations, ignoring case. The slug stays
    fixed so links and webhook URLs keep working after a rename. A new timezone
    applies to events classified from then on.
    """
    organization = await get_active_organization(db, organization_id)
    changed: list[str] = []
    if name is not None:
        name = name.strip()
        if not name:
            raise MalformedPayloadError("Organization name must not be blank")
        if name != organization.name:
            clash = await db.execute(
                select(Organization.id).where(
                    func.lower(Organization.name) == name.lower(),
                    Organization.id != organization_id,
                    Organization.is_active.is_(True),
                )
            )
            if clash.first() is not None:
                raise ConflictError("An organization with this name already exists")
            organization.name = name
            changed.append("name")
    if plan is not None and plan != organization.plan:
        organization.plan = plan
        changed.append("plan")
    if timezone_name is not None and timezone_name != organization.timezone:
        organization.timezone = timezone_name
        changed.append("timezone")
    if changed:
        await db.commit()
        await db.refresh(organization)
        logger.info("organization.updated organization_id=%s fields=%s", organization_id, ",".join(changed))
    return organization, changed
