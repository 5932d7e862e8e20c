"""
RBAC dependencies — request authentication and permission enforcement.

`get_current_session` runs on every authenticated request:

1. Decode the bearer JWT.
2. Load the session it names and check the stored token digest.
3. `touch` the session (sliding idle expiry, IP-change flag).
4. Reject with 401 when the session is no longer live.
5. Surface the advisory suspicious flag as response headers.

`require_permission` is a *dependency factory* layered on top of it:
call it with one or more permission codes and it returns a FastAPI
dependency that answers 403 unless the user holds every code, with NO
details about which permissions exist (prevents enumeration attacks).

Usage in a route:
    @router.get("/sessions")
    async def list_sessions(current: CurrentSession = Depends(require_permission("session.read"))): ...
"""

import logging
import uuid
from typing import NamedTuple

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from helpdesk.core.clock import Clock, get_clock
from helpdesk.core.database import get_db
from helpdesk.core.errors import storage_errors
from helpdesk.core.security import client_ip, decode_session_token, hash_token, oauth2_scheme
from helpdesk.models.role import Permission, Role
from helpdesk.models.session import UserSession
from helpdesk.models.user import User, UserStatus
from helpdesk.services import session_registry

logger = logging.getLogger("rbac")

SUSPICIOUS_HEADER = "X-Session-Suspicious"
SUSPICIOUS_REASON_HEADER = "X-Session-Suspicious-Reason"


class CurrentSession(NamedTuple):
    user: User
    session: UserSession
    suspicious: bool = False
    suspicious_reason: str | None = None


def _unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


@storage_errors
async def _load_user_with_permissions(
    user_id: uuid.UUID,
    db: AsyncSession,
) -> User | None:
    """Fetch the user and eagerly load roles → permissions in one go."""
    stmt = (
        select(User)
        .options(selectinload(User.roles).selectinload(Role.permissions))
        .where(User.id == user_id)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


@storage_errors
async def has_permission(user_id: uuid.UUID, code: str, db: AsyncSession) -> bool:
    """True when any role held by the user grants `code`."""
    stmt = (
        select(Permission.id)
        .join(Permission.roles)
        .join(Role.users)
        .where(User.id == user_id, Permission.code == code)
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def peek_session(token: str | None, db: AsyncSession) -> UserSession | None:
    """Resolve a bearer token to its session without recording activity."""
    if not token:
        return None
    payload = decode_session_token(token)
    if payload is None:
        return None
    try:
        session_id = uuid.UUID(payload["session_id"])
    except ValueError:
        return None
    session = await session_registry.get(session_id, db)
    if session is None or session.token_hash != hash_token(token):
        return None
    return session


async def get_current_session(
    request: Request,
    response: Response,
    token: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> CurrentSession:
    session = await peek_session(token, db)
    if session is None:
        raise _unauthorized()

    touched = await session_registry.touch(session.id, client_ip(request), db, now=clock.now())
    if not touched.live:
        raise _unauthorized("Session expired")

    user = await _load_user_with_permissions(session.user_id, db)
    if user is None:
        raise _unauthorized("User not found")
    # Disabled users must never pass
    if user.status == UserStatus.DISABLED:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")

    if touched.suspicious:
        response.headers[SUSPICIOUS_HEADER] = "true"
        if touched.reason:
            response.headers[SUSPICIOUS_REASON_HEADER] = touched.reason

    return CurrentSession(
        user=user,
        session=session,
        suspicious=touched.suspicious,
        suspicious_reason=touched.reason,
    )


class require_permission:
    """
    Dependency factory.

    Can be used as:
        Depends(require_permission("session.read"))
        Depends(require_permission("lockout.read", "lockout.manage"))
    """

    def __init__(self, *permission_codes: str):
        self.required_codes = set(permission_codes)

    async def __call__(
        self,
        current: CurrentSession = Depends(get_current_session),
        db: AsyncSession = Depends(get_db),
    ) -> CurrentSession:
        missing = {
            code for code in self.required_codes
            if not await has_permission(current.user.id, code, db)
        }
        if missing:
            logger.warning(
                "Permission denied for user %s — required: %s, missing: %s",
                current.user.id,
                self.required_codes,
                missing,
            )
            # Intentionally vague — do NOT reveal which codes are missing
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return current
