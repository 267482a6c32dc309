from __future__ import annotations

import pytest
from sqlalchemy import select

from whisprnet.domain.models import AuditEvent
from whisprnet.tests.utils.accounts import DEFAULT_PASSWORD, login, seed_member, seed_organization


def _org_path(organization_id: str) -> str:
    return f"/v1/organizations/{organization_id}"


def _user_path(organization_id: str, user_id: str, suffix: str = "") -> str:
    return f"/v1/organizations/{organization_id}/users/{user_id}{suffix}"


@pytest.mark.asyncio
async def test_members_read_their_organization(client, database) -> None:
    organization_id = await seed_organization(database, name="Acme", timezone_name="Europe/Berlin")
    other_id = await seed_organization(database, name="Other")
    _user, headers = await seed_member(database, client, organization_id=organization_id)
    response = await client.get(_org_path(organization_id), headers=headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert (data["id"], data["name"], data["timezone"], data["plan"]) == (
        organization_id,
        "Acme",
        "Europe/Berlin",
        "free",
    )
    assert (await client.get(_org_path(other_id), headers=headers)).status_code == 404


@pytest.mark.asyncio
async def test_org_admin_updates_settings(client, database) -> None:
    organization_id = await seed_organization(database, name="Acme")
    _admin, headers = await seed_member(database, client, organization_id=organization_id, role="org_admin")
    original = (await client.get(_org_path(organization_id), headers=headers)).json()["data"]

    response = await client.patch(
        _org_path(organization_id),
        headers=headers,
        json={"name": "Acme Labs", "plan": "professional", "timezone": "America/New_York"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert (data["name"], data["plan"], data["timezone"]) == ("Acme Labs", "professional", "America/New_York")
    # Renames keep the slug so existing links stay valid.
    assert data["slug"] == original["slug"]

    unchanged = await client.patch(_org_path(organization_id), headers=headers, json={"plan": "professional"})
    assert unchanged.status_code == 200
    async with database.session() as session:
        rows = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "organizations.update"))
        ).scalars().all()
    assert [row.metadata_json for row in rows] == [{"fields": ["name", "plan", "timezone"]}]


@pytest.mark.asyncio
async def test_organization_update_validation(client, database) -> None:
    organization_id = await seed_organization(database, name="Acme")
    await seed_organization(database, name="Globex")
    _admin, headers = await seed_member(database, client, organization_id=organization_id, role="org_admin")
    _member, member_headers = await seed_member(database, client, organization_id=organization_id)

    bad_zone = await client.patch(_org_path(organization_id), headers=headers, json={"timezone": "Mars/Olympus"})
    assert bad_zone.status_code == 422
    bad_plan = await client.patch(_org_path(organization_id), headers=headers, json={"plan": "platinum"})
    assert bad_plan.status_code == 422
    extra = await client.patch(_org_path(organization_id), headers=headers, json={"slug": "mine"})
    assert extra.status_code == 422
    blank = await client.patch(_org_path(organization_id), headers=headers, json={"name": "   "})
    assert blank.status_code == 400
    taken = await client.patch(_org_path(organization_id), headers=headers, json={"name": "GLOBEX"})
    assert taken.status_code == 409
    forbidden = await client.patch(_org_path(organization_id), headers=member_headers, json={"plan": "enterprise"})
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_org_admin_changes_member_roles(client, database) -> None:
    organization_id = await seed_organization(database)
    admin, headers = await seed_member(database, client, organization_id=organization_id, role="org_admin")
    member, member_headers = await seed_member(database, client, organization_id=organization_id)
    users_path = f"/v1/organizations/{organization_id}/users"
    assert (await client.get(users_path, headers=member_headers)).status_code == 403

    promoted = await client.patch(_user_path(organization_id, member.id), headers=headers, json={"role": "org_admin"})
    assert promoted.status_code == 200
    assert promoted.json()["data"]["role"] == "org_admin"
    # Authorization reads the stored role, so the member's current token is enough.
    assert (await client.get(users_path, headers=member_headers)).status_code == 200
    fetched = await client.get(_user_path(organization_id, member.id), headers=headers)
    assert fetched.json()["data"]["role"] == "org_admin"

    platform = await client.patch(
        _user_path(organization_id, member.id), headers=headers, json={"role": "super_admin"}
    )
    assert platform.status_code == 422
    self_demotion = await client.patch(_user_path(organization_id, admin.id), headers=headers, json={"role": "user"})
    assert self_demotion.status_code == 403


@pytest.mark.asyncio
async def test_deactivated_member_loses_access(client, database) -> None:
    organization_id = await seed_organization(database)
    admin, headers = await seed_member(database, client, organization_id=organization_id, role="org_admin")
    member, _ = await seed_member(database, client, organization_id=organization_id)
    tokens = await login(client, member.email)

    response = await client.post(_user_path(organization_id, member.id, "/deactivate"), headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["is_active"] is False
    again = await client.post(_user_path(organization_id, member.id, "/deactivate"), headers=headers)
    assert again.status_code == 200

    me = await client.get("/v1/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert me.status_code == 401
    refreshed = await client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 401
    relogin = await client.post("/v1/auth/login", json={"email": member.email, "password": DEFAULT_PASSWORD})
    assert relogin.status_code == 403

    self_deactivation = await client.post(_user_path(organization_id, admin.id, "/deactivate"), headers=headers)
    assert self_deactivation.status_code == 403


@pytest.mark.asyncio
async def test_member_management_is_organization_scoped(client, database) -> None:
    organization_id = await seed_organization(database, name="Owner")
    other_id = await seed_organization(database, name="Other")
    _admin, headers = await seed_member(database, client, organization_id=organization_id, role="org_admin")
    outsider, _ = await seed_member(database, client, organization_id=other_id)

    # A user id from another organization is not found, even under the caller's own organization.
    hidden = await client.patch(_user_path(organization_id, outsider.id), headers=headers, json={"role": "org_admin"})
    assert hidden.status_code == 404
    deactivate = await client.post(_user_path(organization_id, outsider.id, "/deactivate"), headers=headers)
    assert deactivate.status_code == 404
    foreign = await client.get(_user_path(other_id, outsider.id), headers=headers)
    assert foreign.status_code == 404
