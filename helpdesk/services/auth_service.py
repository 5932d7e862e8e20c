"""
Authentication service — the login orchestrator.

Handles:
- Login: lock check, credential verification, counter bookkeeping and
  session creation
- Logout of the caller's own session

Per attempt: START → CHECK_LOCKS → VERIFY_CREDENTIALS → SUCCESS | FAIL.

Ordering rules:
- Locks are checked before any password hashing.  While the account or
  the source IP is locked the credentials are never looked at.
- A failure is recorded against the ACCOUNT (whenever the account
  exists, disabled or not) and then the IP, and committed before
  `InvalidCredentials` is raised.
- Storage trouble rolls the whole attempt back and surfaces as
  `StorageUnavailable`; it never counts as a failed attempt.

The orchestrator owns no state of its own.  Every row it touches belongs
to the lockout guard or the session registry.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import NamedTuple

import aiosmtplib
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.clock import utcnow
from helpdesk.core.config import settings
from helpdesk.core.errors import InvalidCredentials, LockedOut, StorageUnavailable, storage_errors
from helpdesk.core.log_utils import mask_email, sanitize
from helpdesk.core.security import dummy_password_hash, normalize_ip, verify_password
from helpdesk.models.lockout import SubjectKind
from helpdesk.models.session import TerminationReason, UserSession
from helpdesk.models.user import User
from helpdesk.services import email_service, lockout_guard, session_registry, user_service

logger = logging.getLogger(__name__)


class LoginResult(NamedTuple):
    user: User
    session: UserSession
    access_token: str
    token_type: str = "bearer"


# ── Helpers ──────────────────────────────────────────────────────────

@storage_errors
async def _commit(db: AsyncSession) -> None:
    await db.commit()


async def _check_locks(user: User | None, ip: str, now: datetime, db: AsyncSession) -> None:
    statuses = [await lockout_guard.is_locked(SubjectKind.IP, ip, db, now=now)]
    if user is not None:
        statuses.append(
            await lockout_guard.is_locked(SubjectKind.ACCOUNT, str(user.id), db, now=now)
        )
    remaining = [s.remaining_seconds for s in statuses if s.locked]
    if remaining:
        raise LockedOut(max(remaining))


async def _notify_lock(user: User, ip: str, failure: lockout_guard.FailureResult, now: datetime) -> None:
    if not settings.LOCKOUT_NOTIFICATION_EMAIL:
        return
    try:
        await email_service.send_lockout_notification(
            user.email,
            ip,
            failure.failed_attempts,
            now + timedelta(seconds=failure.remaining_seconds),
        )
    except (aiosmtplib.SMTPException, OSError):
        logger.warning("Lockout notification for %s not sent", mask_email(user.email), exc_info=True)


# ── Login ────────────────────────────────────────────────────────────

async def attempt_login(
    email: str,
    password: str,
    source_ip: str | None,
    user_agent: str | None,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> LoginResult:
    """
    Run one login attempt to completion.

    Raises `LockedOut`, `InvalidCredentials` or `StorageUnavailable`;
    returns the new session and its bearer token otherwise.
    """
    now = now or utcnow()
    ip = normalize_ip(source_ip)
    identifier = sanitize(user_service.normalize_email(email))

    try:
        user = await user_service.get_user_by_email(email, db)

        # ── CHECK_LOCKS ──────────────────────────────────────────────
        if settings.LOCKOUT_ENABLED:
            try:
                await _check_locks(user, ip, now, db)
            except LockedOut as exc:
                logger.warning(
                    "Login refused for %s from %s: locked for another %ds",
                    mask_email(identifier), ip, exc.remaining_seconds,
                )
                raise

        # ── VERIFY_CREDENTIALS ───────────────────────────────────────
        if user is not None and user.can_authenticate:
            valid = verify_password(password, user.password_hash)
        else:
            # same bcrypt cost whether or not the account exists
            verify_password(password, dummy_password_hash())
            valid = False

        # ── FAIL ─────────────────────────────────────────────────────
        if not valid:
            account_failure = None
            if settings.LOCKOUT_ENABLED:
                # disabled accounts still exist and are counted
                if user is not None:
                    account_failure = await lockout_guard.record_failure(
                        SubjectKind.ACCOUNT, str(user.id), db, context=ip, now=now,
                    )
                await lockout_guard.record_failure(
                    SubjectKind.IP, ip, db, context=identifier, now=now,
                )
            await _commit(db)

            logger.info("Failed login for %s from %s", mask_email(identifier), ip)
            if account_failure is not None and account_failure.newly_locked:
                await _notify_lock(user, ip, account_failure, now)
            raise InvalidCredentials()

        # ── SUCCESS ──────────────────────────────────────────────────
        if settings.LOCKOUT_ENABLED:
            await lockout_guard.record_success(SubjectKind.ACCOUNT, str(user.id), db, now=now)
            await lockout_guard.record_success(SubjectKind.IP, ip, db, now=now)
        session, token = await session_registry.create(user.id, user_agent, ip, db, now=now)
        await _commit(db)
    except StorageUnavailable:
        await db.rollback()
        logger.error("Login for %s from %s aborted: storage unavailable", mask_email(identifier), ip)
        raise

    logger.info("Login: %s from %s (session %s)", mask_email(identifier), ip, session.id)
    return LoginResult(user=user, session=session, access_token=token)


# ── Logout ───────────────────────────────────────────────────────────

async def logout(
    session_id: uuid.UUID,
    user_id: uuid.UUID,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> bool:
    """End the caller's current session."""
    return await session_registry.terminate(
        session_id, TerminationReason.USER_LOGOUT, db, actor_id=user_id, now=now,
    )
