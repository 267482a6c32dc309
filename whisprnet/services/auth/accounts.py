from __future__ import annotations

from datetime import datetime, timezone
import logging
import re

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.core.errors import ConflictError, ForbiddenError, InvalidCredentialsError, NotFoundError
from whisprnet.domain.models import Organization, User
from whisprnet.persistence.guards import tenant_predicate
from whisprnet.services.auth.passwords import hash_password, validate_password, verify_password
from whisprnet.services.auth.roles import ADMIN_ROLES, normalize_role
from whisprnet.services.auth.sessions import TokenPair, revoke_user_sessions, start_session


logger = logging.getLogger(__name__)

PLANS: tuple[str, ...] = ("free", "basic", "professional", "enterprise")
# Roles an organization admin may hand out; super_admin is platform-only.
MEMBER_ROLES: tuple[str, ...] = ("user", "org_admin")
_SLUG_STRIP = re.compile(r"[^a-z0-9]+")
SLUG_ATTEMPTS = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def slugify(name: str) -> str:
    slug = _SLUG_STRIP.sub("-", name.strip().lower()).strip("-")
    return slug or "organization"


async def _unique_slug(db: AsyncSession, name: str) -> str:
    # First free of base, base-2, base-3, ...; "Acme 2" may already own acme-2.
    base = slugify(name)
    result = await db.execute(
        select(Organization.slug).where((Organization.slug == base) | Organization.slug.like(f"{base}-%"))
    )
    taken = set(result.scalars().all())
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def create_organization(
    db: AsyncSession,
    *,
    name: str,
    plan: str = "free",
    timezone_name: str = "UTC",
) -> Organization:
    # Must run first in its transaction: a slug race rolls the session back and retries.
    if plan not in PLANS:
        raise ValueError(f"Unsupported plan: {plan}")
    for _attempt in range(SLUG_ATTEMPTS):
        slug = await _unique_slug(db, name)
        organization = Organization(
            name=name.strip(),
            slug=slug,
            plan=plan,
            timezone=timezone_name,
        )
        db.add(organization)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            logger.info("organization.slug_conflict slug=%s", slug)
            continue
        return organization
    raise ConflictError("Could not allocate a unique organization slug; retry the request")


async def create_user(
    db: AsyncSession,
    *,
    email: str,
    password: str,
    role: str,
    organization_id: str | None,
    first_name: str = "",
    last_name: str = "",
) -> User:
    # Flushes so duplicate emails surface as ConflictError here.
    validate_password(password)
    normalized_role = normalize_role(role)
    if organization_id is None and normalized_role != "super_admin":
        raise ValueError("Only super admins may exist outside an organization")
    user = User(
        email=normalize_email(email),
        password_hash=await hash_password(password),
        role=normalized_role,
        organization_id=organization_id,
        first_name=first_name,
        last_name=last_name,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError("A user with this email already exists") from exc
    return user


async def register(
    db: AsyncSession,
    *,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    organization_name: str,
    plan: str = "free",
    timezone_name: str = "UTC",
) -> tuple[User, Organization, TokenPair]:
    # Self-service sign-up creates the organization and its first org admin.
    if await get_user_by_email(db, email) is not None:
        raise ConflictError("A user with this email already exists")
    organization = await create_organization(
        db, name=organization_name, plan=plan, timezone_name=timezone_name
    )
    user = await create_user(
        db,
        email=email,
        password=password,
        role="org_admin",
        organization_id=organization.id,
        first_name=first_name,
        last_name=last_name,
    )
    pair = await start_session(db, user=user, audience="user")
    await db.commit()
    logger.info("auth.register organization_id=%s user_id=%s", organization.id, user.id)
    return user, organization, pair


async def authenticate(db: AsyncSession, *, email: str, password: str, audience: str) -> tuple[User, TokenPair]:
    """Verify credentials and open a session on the requested login path.

    ``audience="admin"`` is the administrative path: only org admins and super admins
    may use it, and it is the only place admin-audience tokens are minted.
    """
    user = await get_user_by_email(db, email)
    password_ok = await verify_password(password, user.password_hash if user is not None else None)
    if user is None or not password_ok:
        raise InvalidCredentialsError("Invalid email or password")
    if not user.is_active:
        raise ForbiddenError("Account is deactivated")
    if user.organization_id is not None:
        organization = await db.get(Organization, user.organization_id)
        if organization is None or not organization.is_active:
            raise ForbiddenError("Organization is inactive")
    if audience == "admin" and user.role not in ADMIN_ROLES:
        raise ForbiddenError("Administrator access required")
    user.last_login_at = _utc_now()
    pair = await start_session(db, user=user, audience=audience)
    await db.commit()
    return user, pair


async def update_credentials(
    db: AsyncSession,
    *,
    user: User,
    current_password: str,
    current_session_id: str,
    new_email: str | None = None,
    new_password: str | None = None,
) -> User:
    # Re-authenticate before changing credentials; other sessions are signed out.
    if not await verify_password(current_password, user.password_hash):
        raise InvalidCredentialsError("Current password is incorrect")
    if new_email is not None and normalize_email(new_email) != user.email:
        existing = await get_user_by_email(db, new_email)
        if existing is not None:
            raise ConflictError("A user with this email already exists")
        user.email = normalize_email(new_email)
    if new_password is not None:
        validate_password(new_password)
        user.password_hash = await hash_password(new_password)
    await revoke_user_sessions(
        db, user.id, reason="credentials_updated", keep_session_id=current_session_id
    )
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError("A user with this email already exists") from exc
    return user


async def get_member(db: AsyncSession, organization_id: str, user_id: str) -> User:
    # Users of other organizations look exactly like missing ones.
    result = await db.execute(select(User).where(User.id == user_id, tenant_predicate(User, organization_id)))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")
    return user


async def change_member_role(
    db: AsyncSession, *, organization_id: str, user_id: str, role: str, actor_id: str
) -> tuple[User, str]:
    """Set a member's role and return it with the previous one.

    Authorization reads the stored role on every request, so the change applies
    to tokens already issued.
    """
    new_role = normalize_role(role)
    if new_role not in MEMBER_ROLES:
        raise ValueError(f"Role {role} cannot be assigned inside an organization")
    user = await get_member(db, organization_id, user_id)
    previous = user.role
    if user.id == actor_id and new_role != previous:
        raise ForbiddenError("Administrators cannot change their own role")
    if new_role != previous:
        user.role = new_role
        await db.commit()
        logger.info(
            "users.role_changed user_id=%s organization_id=%s from=%s to=%s",
            user.id,
            organization_id,
            previous,
            new_role,
        )
    return user, previous


async def deactivate_member(db: AsyncSession, *, organization_id: str, user_id: str, actor_id: str) -> User:
    # Deactivation blocks login and refresh; revoking sessions stops live access tokens.
    user = await get_member(db, organization_id, user_id)
    if user.id == actor_id:
        raise ForbiddenError("Administrators cannot deactivate themselves")
    if not user.is_active:
        return user
    user.is_active = False
    await revoke_user_sessions(db, user.id, reason="user_deactivated")
    await db.commit()
    logger.info("users.deactivated user_id=%s organization_id=%s", user.id, organization_id)
    return user
