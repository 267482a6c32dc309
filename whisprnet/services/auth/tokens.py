from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import secrets
from uuid import uuid4

import jwt

from whisprnet.core.config import get_settings
from whisprnet.core.errors import InvalidTokenError, TokenExpiredError


AUDIENCES: dict[str, str] = {
    "user": "whisprnet:user",
    "admin": "whisprnet:admin",
}
_REFRESH_PREFIX = "wnrt"


@dataclass(frozen=True)
class AccessClaims:
    subject_id: str
    organization_id: str | None
    role: str
    session_id: str
    audience: str
    expires_at: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def access_token_ttl(audience: str) -> timedelta:
    settings = get_settings()
    if audience == "admin":
        return timedelta(minutes=settings.admin_access_token_ttl_minutes)
    return timedelta(minutes=settings.access_token_ttl_minutes)


def encode_access_token(
    *,
    subject_id: str,
    organization_id: str | None,
    role: str,
    session_id: str,
    audience: str,
    now: datetime | None = None,
) -> tuple[str, datetime]:
    settings = get_settings()
    issued_at = now or _utc_now()
    expires_at = issued_at + access_token_ttl(audience)
    claims = {
        "iss": settings.jwt_issuer,
        "sub": subject_id,
        "org": organization_id,
        "role": role,
        "sid": session_id,
        "aud": AUDIENCES[audience],
        "typ": "access",
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
        "jti": uuid4().hex,
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, expires_at


def decode_access_token(token: str) -> AccessClaims:
    # Accept either audience here; route dependencies decide which one they require.
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=list(AUDIENCES.values()),
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "sub", "sid", "aud"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpiredError("Access token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise InvalidTokenError("Access token is invalid") from exc
    if claims.get("typ") != "access":
        raise InvalidTokenError("Access token is invalid")
    audience = next((key for key, value in AUDIENCES.items() if value == claims["aud"]), None)
    if audience is None:
        raise InvalidTokenError("Access token is invalid")
    return AccessClaims(
        subject_id=str(claims["sub"]),
        organization_id=claims.get("org"),
        role=str(claims.get("role") or ""),
        session_id=str(claims["sid"]),
        audience=audience,
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
    )


def hash_refresh_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_refresh_token(*, token_id: str | None = None) -> tuple[str, str, str]:
    # Embed the token id so operators can trace a token without the secret.
    resolved_id = token_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_token = f"{_REFRESH_PREFIX}_{resolved_id}_{secret}"
    return resolved_id, raw_token, hash_refresh_token(raw_token)


def looks_like_refresh_token(raw_token: str) -> bool:
    return raw_token.startswith(f"{_REFRESH_PREFIX}_") and raw_token.count("_") >= 2
