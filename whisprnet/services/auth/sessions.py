from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.core.config import get_settings
from whisprnet.core.errors import ForbiddenError, InvalidTokenError, TokenExpiredError
from whisprnet.domain.models import AuthSession, Organization, RefreshToken, User, as_utc
from whisprnet.services.auth.tokens import (
    AccessClaims,
    decode_access_token,
    encode_access_token,
    generate_refresh_token,
    hash_refresh_token,
)
from whisprnet.services.locks import KeyedLockRegistry
from whisprnet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Serialize same-token redemptions inside one process; the conditional update covers the rest.
_redemption_locks = KeyedLockRegistry()


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    session_id: str
    audience: str


@dataclass(frozen=True)
class ResolvedSession:
    user: User
    organization: Organization | None
    claims: AccessClaims


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _issue_pair(
    db: AsyncSession,
    *,
    auth_session: AuthSession,
    user: User,
    now: datetime,
    token_id: str | None = None,
) -> TokenPair:
    settings = get_settings()
    refresh_id, raw_refresh, refresh_hash = generate_refresh_token(token_id=token_id)
    refresh_expires_at = now + timedelta(days=settings.refresh_token_ttl_days)
    db.add(
        RefreshToken(
            id=refresh_id,
            session_id=auth_session.id,
            token_hash=refresh_hash,
            issued_at=now,
            expires_at=refresh_expires_at,
        )
    )
    access_token, access_expires_at = encode_access_token(
        subject_id=user.id,
        organization_id=user.organization_id,
        role=user.role,
        session_id=auth_session.id,
        audience=auth_session.audience,
        now=now,
    )
    return TokenPair(
        access_token=access_token,
        access_expires_at=access_expires_at,
        refresh_token=raw_refresh,
        refresh_expires_at=refresh_expires_at,
        session_id=auth_session.id,
        audience=auth_session.audience,
    )


async def start_session(db: AsyncSession, *, user: User, audience: str) -> TokenPair:
    # Open a new session chain; the caller commits.
    now = _utc_now()
    auth_session = AuthSession(user_id=user.id, audience=audience, created_at=now)
    db.add(auth_session)
    await db.flush()
    return _issue_pair(db, auth_session=auth_session, user=user, now=now)


async def revoke_session(db: AsyncSession, session_id: str, *, reason: str) -> None:
    # Revoking the chain invalidates every access and refresh token minted under it.
    await db.execute(
        update(AuthSession)
        .where(AuthSession.id == session_id, AuthSession.revoked_at.is_(None))
        .values(revoked_at=_utc_now(), revoked_reason=reason)
    )


async def revoke_user_sessions(
    db: AsyncSession,
    user_id: str,
    *,
    reason: str,
    keep_session_id: str | None = None,
) -> None:
    stmt = update(AuthSession).where(
        AuthSession.user_id == user_id, AuthSession.revoked_at.is_(None)
    )
    if keep_session_id is not None:
        stmt = stmt.where(AuthSession.id != keep_session_id)
    await db.execute(stmt.values(revoked_at=_utc_now(), revoked_reason=reason))


async def revoke_organization_sessions(db: AsyncSession, organization_id: str, *, reason: str) -> None:
    user_ids = select(User.id).where(User.organization_id == organization_id)
    await db.execute(
        update(AuthSession)
        .where(AuthSession.user_id.in_(user_ids), AuthSession.revoked_at.is_(None))
        .values(revoked_at=_utc_now(), revoked_reason=reason)
    )


async def _load_active_user(db: AsyncSession, user_id: str) -> tuple[User, Organization | None]:
    user = await db.get(User, user_id)
    if user is None:
        raise InvalidTokenError("Token subject no longer exists")
    if not user.is_active:
        raise ForbiddenError("Account is deactivated")
    organization = None
    if user.organization_id is not None:
        organization = await db.get(Organization, user.organization_id)
        if organization is None or not organization.is_active:
            raise ForbiddenError("Organization is inactive")
    return user, organization


async def _refuse_reuse(db: AsyncSession, *, session_id: str, token_id: str) -> InvalidTokenError:
    # A used token presented again means it leaked; kill the whole chain.
    await revoke_session(db, session_id, reason="refresh_reuse")
    await db.commit()
    increment_counter("auth_refresh_reuse_total")
    logger.warning("auth.refresh.reuse_detected session_id=%s token_id=%s", session_id, token_id)
    return InvalidTokenError("Refresh token has already been used")


async def rotate_refresh_token(db: AsyncSession, raw_token: str) -> tuple[TokenPair, User]:
    """Redeem a refresh token exactly once and issue the next pair in its chain.

    The old token is claimed with a conditional update (``used_at IS NULL``); only the
    caller whose update touches the row may mint the successor. Any later presentation
    of the same token revokes the session chain.
    """
    token_hash = hash_refresh_token(raw_token)
    async with _redemption_locks.hold(token_hash):
        result = await db.execute(select(RefreshToken).where(RefreshToken.token_hash == token_hash))
        token = result.scalar_one_or_none()
        if token is None:
            raise InvalidTokenError("Refresh token is invalid")
        # Keep plain copies; a rollback expires ORM attributes.
        token_id = token.id
        session_id = token.session_id
        auth_session = await db.get(AuthSession, session_id)
        if auth_session is None or auth_session.revoked_at is not None:
            raise InvalidTokenError("Refresh token is invalid")
        if token.used_at is not None:
            raise await _refuse_reuse(db, session_id=session_id, token_id=token_id)
        now = _utc_now()
        if as_utc(token.expires_at) <= now:
            await revoke_session(db, auth_session.id, reason="expired")
            await db.commit()
            raise TokenExpiredError("Refresh token has expired")
        try:
            user, _organization = await _load_active_user(db, auth_session.user_id)
        except ForbiddenError as exc:
            await revoke_session(db, auth_session.id, reason="subject_inactive")
            await db.commit()
            raise InvalidTokenError("Refresh token is invalid") from exc

        successor_id = generate_refresh_token()[0]
        claimed = await db.execute(
            update(RefreshToken)
            .where(RefreshToken.id == token_id, RefreshToken.used_at.is_(None))
            .values(used_at=now, replaced_by_id=successor_id)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            # Another process redeemed it between our read and our claim.
            await db.rollback()
            raise await _refuse_reuse(db, session_id=session_id, token_id=token_id)
        pair = _issue_pair(db, auth_session=auth_session, user=user, now=now, token_id=successor_id)
        await db.commit()
    return pair, user


async def find_session_for_refresh_token(db: AsyncSession, raw_token: str) -> AuthSession | None:
    result = await db.execute(
        select(AuthSession)
        .join(RefreshToken, RefreshToken.session_id == AuthSession.id)
        .where(RefreshToken.token_hash == hash_refresh_token(raw_token))
    )
    return result.scalar_one_or_none()


async def resolve_access_token(db: AsyncSession, raw_token: str) -> ResolvedSession:
    # Stateless signature check first, then the session row for revocation.
    claims = decode_access_token(raw_token)
    auth_session = await db.get(AuthSession, claims.session_id)
    if auth_session is None or auth_session.revoked_at is not None:
        raise InvalidTokenError("Session has been revoked")
    if auth_session.user_id != claims.subject_id or auth_session.audience != claims.audience:
        raise InvalidTokenError("Access token is invalid")
    user, organization = await _load_active_user(db, claims.subject_id)
    return ResolvedSession(user=user, organization=organization, claims=claims)
