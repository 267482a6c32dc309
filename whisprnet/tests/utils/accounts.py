from __future__ import annotations

from uuid import uuid4

from httpx import AsyncClient

from whisprnet.domain.models import Organization, User
from whisprnet.persistence.db import Database
from whisprnet.services.auth.accounts import create_user


DEFAULT_PASSWORD = "correct-horse-battery"


async def seed_organization(
    database: Database,
    *,
    organization_id: str | None = None,
    name: str = "Acme",
    timezone_name: str = "UTC",
) -> str:
    # Insert directly so tests can pick stable ids such as "org-1".
    organization_id = organization_id or uuid4().hex
    async with database.session() as session:
        session.add(
            Organization(
                id=organization_id,
                name=name,
                slug=f"{name.lower()}-{organization_id[:8]}",
                timezone=timezone_name,
            )
        )
        await session.commit()
    return organization_id


async def seed_user(
    database: Database,
    *,
    organization_id: str | None,
    role: str = "user",
    email: str | None = None,
    password: str = DEFAULT_PASSWORD,
) -> User:
    async with database.session() as session:
        user = await create_user(
            session,
            email=email or f"{role}-{uuid4().hex[:8]}@example.com",
            password=password,
            role=role,
            organization_id=organization_id,
        )
        await session.commit()
        return user


async def login(
    client: AsyncClient,
    email: str,
    password: str = DEFAULT_PASSWORD,
    *,
    admin: bool = False,
) -> dict:
    path = "/v1/auth/admin/login" if admin else "/v1/auth/login"
    response = await client.post(path, json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]["tokens"]


def auth_headers(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


async def seed_member(
    database: Database,
    client: AsyncClient,
    *,
    organization_id: str,
    role: str = "user",
) -> tuple[User, dict[str, str]]:
    # A persisted user plus ready-to-use bearer headers.
    user = await seed_user(database, organization_id=organization_id, role=role)
    tokens = await login(client, user.email)
    return user, auth_headers(tokens["access_token"])
