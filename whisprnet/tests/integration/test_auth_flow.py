from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from whisprnet.domain.models import AuditEvent, AuthSession, RefreshToken, User
from whisprnet.tests.utils.accounts import (
    DEFAULT_PASSWORD,
    auth_headers,
    login,
    seed_member,
    seed_organization,
    seed_user,
)


async def _register(client, email: str = "founder@example.com") -> dict:
    response = await client.post(
        "/v1/auth/register",
        json={
            "email": email,
            "password": DEFAULT_PASSWORD,
            "first_name": "Ada",
            "last_name": "Lovelace",
            "organization_name": "Analytical Engines",
            "timezone": "Europe/London",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.mark.asyncio
async def test_register_login_and_me(client) -> None:
    registered = await _register(client)
    assert registered["user"]["role"] == "org_admin"
    assert registered["organization"]["slug"] == "analytical-engines"
    assert registered["organization"]["timezone"] == "Europe/London"
    assert "password_hash" not in registered["user"]

    tokens = await login(client, "Founder@Example.com")
    me = await client.get("/v1/auth/me", headers=auth_headers(tokens["access_token"]))
    assert me.status_code == 200
    assert me.json()["data"]["email"] == "founder@example.com"
    assert me.json()["data"]["organization_id"] == registered["organization"]["id"]


@pytest.mark.asyncio
async def test_register_rejects_duplicates_and_bad_input(client) -> None:
    await _register(client)
    duplicate = await client.post(
        "/v1/auth/register",
        json={"email": "founder@example.com", "password": DEFAULT_PASSWORD, "organization_name": "Again"},
    )
    assert duplicate.status_code == 409
    weak = await client.post(
        "/v1/auth/register",
        json={"email": "weak@example.com", "password": "short", "organization_name": "Weak"},
    )
    assert weak.status_code == 400
    bad_zone = await client.post(
        "/v1/auth/register",
        json={
            "email": "zone@example.com",
            "password": DEFAULT_PASSWORD,
            "organization_name": "Zone",
            "timezone": "Mars/Olympus",
        },
    )
    assert bad_zone.status_code == 422


@pytest.mark.asyncio
async def test_login_failures_are_uniform(client, database) -> None:
    organization_id = await seed_organization(database)
    user = await seed_user(database, organization_id=organization_id)
    wrong_password = await client.post("/v1/auth/login", json={"email": user.email, "password": "nope-nope-nope"})
    unknown = await client.post("/v1/auth/login", json={"email": "ghost@example.com", "password": DEFAULT_PASSWORD})
    assert wrong_password.status_code == 401
    assert unknown.status_code == 401
    assert wrong_password.json()["error"] == unknown.json()["error"]
    async with database.session() as session:
        failures = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "auth.login.failure"))
        ).scalars().all()
    assert len(failures) == 2


@pytest.mark.asyncio
async def test_refresh_rotates_and_reuse_revokes_chain(client, database) -> None:
    organization_id = await seed_organization(database)
    user = await seed_user(database, organization_id=organization_id)
    tokens = await login(client, user.email)

    rotated = await client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert rotated.status_code == 200
    successor = rotated.json()["data"]
    assert successor["refresh_token"] != tokens["refresh_token"]
    assert successor["session_id"] == tokens["session_id"]

    replay = await client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert replay.status_code == 401
    # The replay revoked the chain, so the successor and its access token are dead too.
    after = await client.post("/v1/auth/refresh", json={"refresh_token": successor["refresh_token"]})
    assert after.status_code == 401
    me = await client.get("/v1/auth/me", headers=auth_headers(successor["access_token"]))
    assert me.status_code == 401
    async with database.session() as session:
        auth_session = await session.get(AuthSession, tokens["session_id"])
    assert auth_session.revoked_reason == "refresh_reuse"


@pytest.mark.asyncio
async def test_expired_refresh_token_revokes_chain(client, database) -> None:
    organization_id = await seed_organization(database)
    user = await seed_user(database, organization_id=organization_id)
    tokens = await login(client, user.email)
    async with database.session() as session:
        await session.execute(
            update(RefreshToken)
            .where(RefreshToken.session_id == tokens["session_id"])
            .values(expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        await session.commit()

    expired = await client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert expired.status_code == 401
    assert expired.json()["error"]["code"] == "AUTH_TOKEN_EXPIRED"
    async with database.session() as session:
        auth_session = await session.get(AuthSession, tokens["session_id"])
    assert auth_session.revoked_reason == "expired"
    # The access token minted alongside it dies with the session.
    me = await client.get("/v1/auth/me", headers=auth_headers(tokens["access_token"]))
    assert me.status_code == 401
    again = await client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert again.json()["error"]["code"] == "AUTH_INVALID_TOKEN"


@pytest.mark.asyncio
async def test_concurrent_refresh_has_one_winner(client, database) -> None:
    organization_id = await seed_organization(database)
    user = await seed_user(database, organization_id=organization_id)
    tokens = await login(client, user.email)
    responses = await asyncio.gather(
        *(client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}) for _ in range(2))
    )
    assert sorted(response.status_code for response in responses) == [200, 401]
    winner = next(response for response in responses if response.status_code == 200).json()["data"]
    # The losing redemption counts as reuse, so the winner's successor is revoked as well.
    follow_up = await client.post("/v1/auth/refresh", json={"refresh_token": winner["refresh_token"]})
    assert follow_up.status_code == 401


@pytest.mark.asyncio
async def test_unknown_refresh_token_is_rejected(client) -> None:
    response = await client.post("/v1/auth/refresh", json={"refresh_token": "wnrt_nope_nope"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_INVALID_TOKEN"


@pytest.mark.asyncio
async def test_logout_revokes_session(client, database) -> None:
    organization_id = await seed_organization(database)
    _user, headers = await seed_member(database, client, organization_id=organization_id)
    response = await client.post("/v1/auth/logout", headers=headers)
    assert response.status_code == 200
    assert response.json()["data"] == {"revoked": True}
    me = await client.get("/v1/auth/me", headers=headers)
    assert me.status_code == 401
    assert me.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_missing_or_garbage_tokens(client) -> None:
    assert (await client.get("/v1/auth/me")).status_code == 401
    assert (await client.get("/v1/auth/me", headers={"Authorization": "Token abc"})).status_code == 401
    assert (await client.get("/v1/auth/me", headers=auth_headers("not.a.jwt"))).status_code == 401


@pytest.mark.asyncio
async def test_credentials_update_signs_out_other_sessions(client, database) -> None:
    organization_id = await seed_organization(database)
    user = await seed_user(database, organization_id=organization_id)
    current = await login(client, user.email)
    other = await login(client, user.email)
    response = await client.put(
        "/v1/auth/credentials",
        headers=auth_headers(current["access_token"]),
        json={"current_password": DEFAULT_PASSWORD, "password": "new-horse-battery-staple"},
    )
    assert response.status_code == 200
    assert (await client.get("/v1/auth/me", headers=auth_headers(current["access_token"]))).status_code == 200
    assert (await client.get("/v1/auth/me", headers=auth_headers(other["access_token"]))).status_code == 401
    await login(client, user.email, "new-horse-battery-staple")
    old = await client.post("/v1/auth/login", json={"email": user.email, "password": DEFAULT_PASSWORD})
    assert old.status_code == 401

    wrong = await client.put(
        "/v1/auth/credentials",
        headers=auth_headers(current["access_token"]),
        json={"current_password": "definitely-wrong", "email": "new@example.com"},
    )
    assert wrong.status_code == 401
    empty = await client.put(
        "/v1/auth/credentials",
        headers=auth_headers(current["access_token"]),
        json={"current_password": "new-horse-battery-staple"},
    )
    assert empty.status_code == 400


@pytest.mark.asyncio
async def test_admin_login_is_a_separate_path(client, database) -> None:
    organization_id = await seed_organization(database)
    member = await seed_user(database, organization_id=organization_id, role="user")
    org_admin = await seed_user(database, organization_id=organization_id, role="org_admin")
    platform = await seed_user(database, organization_id=None, role="super_admin")

    denied = await client.post("/v1/auth/admin/login", json={"email": member.email, "password": DEFAULT_PASSWORD})
    assert denied.status_code == 403
    await login(client, org_admin.email, admin=True)

    user_audience = await login(client, platform.email)
    admin_audience = await login(client, platform.email, admin=True)
    # Platform routes refuse tokens minted by the regular login path.
    blocked = await client.get("/v1/admin/organizations", headers=auth_headers(user_audience["access_token"]))
    assert blocked.status_code == 403
    allowed = await client.get("/v1/admin/organizations", headers=auth_headers(admin_audience["access_token"]))
    assert allowed.status_code == 200
    assert allowed.json()["data"]["total"] == 1


@pytest.mark.asyncio
async def test_deactivated_user_cannot_login(client, database) -> None:
    organization_id = await seed_organization(database)
    user = await seed_user(database, organization_id=organization_id)
    tokens = await login(client, user.email)
    async with database.session() as session:
        row = await session.get(User, user.id)
        row.is_active = False
        await session.commit()
    response = await client.post("/v1/auth/login", json={"email": user.email, "password": DEFAULT_PASSWORD})
    assert response.status_code == 403
    me = await client.get("/v1/auth/me", headers=auth_headers(tokens["access_token"]))
    assert me.status_code == 403


@pytest.mark.asyncio
async def test_register_picks_a_free_slug(client) -> None:
    # "Acme 2" owns acme-2, so the second plain "Acme" must skip to acme-3.
    slugs = []
    for index, organization_name in enumerate(("Acme 2", "Acme", "Acme")):
        response = await client.post(
            "/v1/auth/register",
            json={
                "email": f"owner{index}@example.com",
                "password": DEFAULT_PASSWORD,
                "organization_name": organization_name,
            },
        )
        assert response.status_code == 201, response.text
        slugs.append(response.json()["data"]["organization"]["slug"])
    assert slugs == ["acme-2", "acme", "acme-3"]
