"""
One-time bootstrap script — creates the first ADMIN user.

Usage:
    python -m helpdesk.scripts.create_admin

You only need this ONCE.  Run `alembic upgrade head` first; the
permission seed runs here as well, so the app need not have started.
"""

import asyncio
import getpass
import uuid

from sqlalchemy import select

from helpdesk.core.database import async_session_factory, engine
from helpdesk.core.security import MAX_PASSWORD_BYTES, hash_password
from helpdesk.models.role import Role
from helpdesk.models.user import User, UserStatus
from helpdesk.rbac.permission_seed import seed
from helpdesk.services.user_service import get_user_by_email, normalize_email


async def create_admin() -> None:
    async with async_session_factory() as session:
        await seed(session)

        # ── Collect input ────────────────────────────────────────────
        print("\nHelpdesk — First Admin Setup\n")
        email = normalize_email(input("  Admin email: "))
        full_name = input("  Full name:   ").strip()
        password = getpass.getpass("  Password:    ")
        confirm = getpass.getpass("  Confirm:     ")

        if password != confirm:
            print("\nPasswords do not match.")
            await engine.dispose()
            return

        if not email or not full_name or not password:
            print("\nAll fields are required.")
            await engine.dispose()
            return

        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            print(f"\nPassword must be at most {MAX_PASSWORD_BYTES} bytes.")
            await engine.dispose()
            return

        # ── Check for existing user ──────────────────────────────────
        if await get_user_by_email(email, session) is not None:
            print(f"\nUser with email '{email}' already exists.")
            await engine.dispose()
            return

        admin_role = (
            await session.execute(select(Role).where(Role.name == "ADMIN"))
        ).scalar_one()

        # ── Create the admin user ────────────────────────────────────
        admin_user = User(
            id=uuid.uuid4(),
            email=email,
            password_hash=hash_password(password),
            full_name=full_name,
            status=UserStatus.ACTIVE,
        )
        admin_user.roles.append(admin_role)
        session.add(admin_user)
        await session.commit()

        print("\nAdmin user created.")
        print(f"    ID:    {admin_user.id}")
        print(f"    Email: {admin_user.email}")
        print("\n   You can now log in via POST /api/auth/login\n")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(create_admin())
