from __future__ import annotations

import argparse
import asyncio
import getpass

from whisprnet.core.logging import configure_logging
from whisprnet.persistence.db import Database
from whisprnet.services.auth.accounts import create_user


async def _create(email: str, password: str) -> None:
    # Platform admins live outside every organization and log in via /auth/admin/login.
    database = Database()
    try:
        async with database.session() as session:
            user = await create_user(
                session,
                email=email,
                password=password,
                role="super_admin",
                organization_id=None,
            )
            await session.commit()
            print(f"super_admin_id={user.id}")
    finally:
        await database.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a platform super admin")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", default=None, help="Prompted when omitted")
    args = parser.parse_args()
    configure_logging()
    password = args.password or getpass.getpass("Password: ")
    asyncio.run(_create(args.email, password))


if __name__ == "__main__":
    main()
