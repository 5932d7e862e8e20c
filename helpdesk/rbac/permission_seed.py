"""
Permission & Role seeding.

Runs on application startup and can be run by hand against a migrated
database.  It is IDEMPOTENT — safe to re-run.

Governance rule enforced here:
    • USER / AGENT may only manage their own sessions
    • lockout.* and session.admin are reserved for ADMIN
    • Only ADMIN holds every permission

Usage:
    python -m helpdesk.rbac.permission_seed
"""

import asyncio
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.models.role import Permission, Role

logger = logging.getLogger(__name__)

# ────────────────────────────────────────────────────────────────────
# 1.  CANONICAL PERMISSION LIST
# ────────────────────────────────────────────────────────────────────
PERMISSIONS: list[dict[str, str]] = [
    # Sessions
    {"code": "session.read", "description": "View own sessions and session history"},
    {"code": "session.manage", "description": "Terminate own sessions"},
    {"code": "session.admin", "description": "Terminate any user's sessions"},
    # Lockouts
    {"code": "lockout.read", "description": "View account / IP lockouts and statistics"},
    {"code": "lockout.manage", "description": "Unlock subjects and clear lockout records"},
    # User management
    {"code": "user.manage", "description": "Disable user accounts"},
]

# ────────────────────────────────────────────────────────────────────
# 2.  ROLE → PERMISSION MAPPING
# ────────────────────────────────────────────────────────────────────
ROLE_PERMISSIONS: dict[str, list[str]] = {
    "ADMIN": [p["code"] for p in PERMISSIONS],  # full access
    "AGENT": [
        "session.read",
        "session.manage",
    ],
    "USER": [
        "session.read",
        "session.manage",
    ],
}


# ────────────────────────────────────────────────────────────────────
# 3.  SEED FUNCTION (idempotent)
# ────────────────────────────────────────────────────────────────────
async def seed(session: AsyncSession) -> None:
    """Create permissions & roles if they don't already exist."""

    # ── Permissions ──────────────────────────────────────────────────
    existing_perms = (await session.execute(select(Permission))).scalars().all()
    code_to_perm: dict[str, Permission] = {p.code: p for p in existing_perms}

    created = 0
    for pdata in PERMISSIONS:
        if pdata["code"] not in code_to_perm:
            perm = Permission(id=uuid.uuid4(), **pdata)
            session.add(perm)
            code_to_perm[pdata["code"]] = perm
            created += 1

    await session.flush()  # ensure IDs are available

    # ── Roles ────────────────────────────────────────────────────────
    existing_roles = (await session.execute(select(Role))).scalars().all()
    existing_role_names = {r.name for r in existing_roles}

    for role_name, perm_codes in ROLE_PERMISSIONS.items():
        if role_name in existing_role_names:
            continue
        role = Role(
            id=uuid.uuid4(),
            name=role_name,
            description=f"Default {role_name} role",
            permissions=[code_to_perm[code] for code in perm_codes if code in code_to_perm],
        )
        session.add(role)
        created += 1

    await session.commit()
    if created:
        logger.info("Seeded %d permissions / roles", created)


# ────────────────────────────────────────────────────────────────────
# 4.  CLI entrypoint:  python -m helpdesk.rbac.permission_seed
# ────────────────────────────────────────────────────────────────────
async def main() -> None:
    from helpdesk.core.database import async_session_factory, engine

    async with async_session_factory() as session:
        await seed(session)
    await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
