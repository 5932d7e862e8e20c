"""
User service — lookup helpers and the admin disable flow.
"""

import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.errors import storage_errors
from helpdesk.models.session import TerminationReason
from helpdesk.models.user import User, UserStatus
from helpdesk.services import session_registry


def normalize_email(email: str) -> str:
    return email.strip().lower()


@storage_errors
async def get_user_by_id(
    user_id: uuid.UUID,
    db: AsyncSession,
) -> User | None:
    return await db.get(User, user_id)


@storage_errors
async def get_user_by_email(
    email: str,
    db: AsyncSession,
) -> User | None:
    stmt = select(User).where(func.lower(User.email) == normalize_email(email))
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


@storage_errors
async def disable_user(
    target_user_id: uuid.UUID,
    actor_id: uuid.UUID,
    db: AsyncSession,
) -> tuple[User | None, int]:
    """
    Admin action: disable a user account and terminate all its sessions.

    Returns the user (None if unknown) and the number of sessions ended.
    """
    user = await get_user_by_id(target_user_id, db)
    if user is None:
        return None, 0
    user.status = UserStatus.DISABLED
    await db.flush()
    # Immediately invalidate every live session for this user
    count = await session_registry.terminate_all(
        target_user_id, TerminationReason.ACCOUNT_DISABLED, db, actor_id=actor_id,
    )
    return user, count


@storage_errors
async def emails_by_id(
    user_ids: list[uuid.UUID],
    db: AsyncSession,
) -> dict[uuid.UUID, str]:
    if not user_ids:
        return {}
    result = await db.execute(select(User.id, User.email).where(User.id.in_(user_ids)))
    return {user_id: email for user_id, email in result.all()}
