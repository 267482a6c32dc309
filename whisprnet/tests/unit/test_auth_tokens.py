from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from whisprnet.core.config import get_settings
from whisprnet.core.errors import InvalidTokenError, MalformedPayloadError, TokenExpiredError
from whisprnet.services.auth.passwords import check_password_sync, hash_password_sync, validate_password
from whisprnet.services.auth.roles import normalize_role, role_allows
from whisprnet.services.auth.tokens import (
    decode_access_token,
    encode_access_token,
    generate_refresh_token,
    hash_refresh_token,
    looks_like_refresh_token,
)


def test_access_token_round_trip() -> None:
    token, expires_at = encode_access_token(
        subject_id="user-1",
        organization_id="org-1",
        role="org_admin",
        session_id="session-1",
        audience="user",
    )
    claims = decode_access_token(token)
    assert claims.subject_id == "user-1"
    assert claims.organization_id == "org-1"
    assert claims.role == "org_admin"
    assert claims.session_id == "session-1"
    assert claims.audience == "user"
    assert claims.expires_at == datetime.fromtimestamp(int(expires_at.timestamp()), tz=timezone.utc)


def test_admin_tokens_are_shorter_lived() -> None:
    now = datetime.now(timezone.utc)
    _, user_expiry = encode_access_token(
        subject_id="u", organization_id=None, role="super_admin", session_id="s", audience="user", now=now
    )
    _, admin_expiry = encode_access_token(
        subject_id="u", organization_id=None, role="super_admin", session_id="s", audience="admin", now=now
    )
    settings = get_settings()
    assert admin_expiry - now == timedelta(minutes=settings.admin_access_token_ttl_minutes)
    assert user_expiry - now == timedelta(minutes=settings.access_token_ttl_minutes)


def test_expired_access_token_is_rejected() -> None:
    token, _ = encode_access_token(
        subject_id="user-1",
        organization_id="org-1",
        role="user",
        session_id="session-1",
        audience="user",
        now=datetime.now(timezone.utc) - timedelta(days=1),
    )
    with pytest.raises(TokenExpiredError):
        decode_access_token(token)


def test_tampered_and_foreign_tokens_are_rejected() -> None:
    token, _ = encode_access_token(
        subject_id="user-1", organization_id="org-1", role="user", session_id="session-1", audience="user"
    )
    header, payload, signature = token.split(".")
    flipped = ("B" if signature[0] == "A" else "A") + signature[1:]
    with pytest.raises(InvalidTokenError):
        decode_access_token(".".join([header, payload, flipped]))
    settings = get_settings()
    forged = jwt.encode(
        {"sub": "user-1", "sid": "s", "aud": "whisprnet:user", "iss": settings.jwt_issuer, "typ": "access",
         "iat": 0, "exp": 4102444800},
        "some-other-secret",
        algorithm=settings.jwt_algorithm,
    )
    with pytest.raises(InvalidTokenError):
        decode_access_token(forged)


def test_refresh_token_format_and_hash() -> None:
    token_id, raw, digest = generate_refresh_token()
    assert raw.startswith(f"wnrt_{token_id}_")
    assert looks_like_refresh_token(raw) is True
    assert looks_like_refresh_token("not-a-token") is False
    assert digest == hash_refresh_token(raw)
    assert generate_refresh_token()[1] != raw


def test_role_hierarchy() -> None:
    assert role_allows(role="super_admin", minimum_role="org_admin") is True
    assert role_allows(role="org_admin", minimum_role="user") is True
    assert role_allows(role="user", minimum_role="org_admin") is False
    assert role_allows(role="unknown", minimum_role="user") is False
    assert normalize_role(" Org_Admin ") == "org_admin"
    with pytest.raises(ValueError):
        normalize_role("owner")


def test_password_hashing_and_policy() -> None:
    hashed = hash_password_sync("correct-horse-battery")
    assert hashed.startswith("$2")
    assert check_password_sync("correct-horse-battery", hashed) is True
    assert check_password_sync("wrong-horse-battery", hashed) is False
    with pytest.raises(MalformedPayloadError):
        validate_password("short")
    with pytest.raises(MalformedPayloadError):
        validate_password("x" * 73)
