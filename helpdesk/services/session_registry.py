"""
Session registry — authoritative record of who is signed in where.

Handles:
- Creating a session (device classification, login-time risk flags,
  bearer token bound 1:1 through its SHA-256 digest)
- Touching a session on every authenticated request (sliding idle
  expiry, advisory IP-change flag)
- Listing sessions / paginated history with derived display fields
- Terminating one, all-but-current, or all sessions of a user
- Maintenance: stamping expired sessions, purging old history

Liveness is always derived from stored timestamps and `now`; nothing
here caches it.  `touch` and `terminate` race on the same row, and
termination must win: `touch` only writes through a conditional
UPDATE guarded by `terminated_at IS NULL` and the `last_activity_at`
value it observed, so it can never resurrect a terminated session.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import NamedTuple

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.clock import utcnow
from helpdesk.core.config import settings
from helpdesk.core.errors import storage_errors
from helpdesk.core.log_utils import sanitize
from helpdesk.core.security import create_session_token, hash_token, normalize_ip
from helpdesk.models.session import TerminationReason, UserSession
from helpdesk.services.user_agent import DeviceInfo, classify

logger = logging.getLogger(__name__)

IP_CHANGED = "ip-changed"
MANY_IPS = "many-ips"
NEW_DEVICE = "new-device"
TOO_MANY_SESSIONS = "too-many-sessions"

# distinct origin IPs among recent logins above which a login from yet another one is flagged
_RECENT_IP_THRESHOLD = 3
# recent agents needed before an unseen browser/OS pair is flagged
_RECENT_AGENT_THRESHOLD = 2
_RECENT_WINDOW = timedelta(hours=24)
_RECENT_LIMIT = 10
_TOUCH_ATTEMPTS = 3


class TouchResult(NamedTuple):
    live: bool
    suspicious: bool = False
    reason: str | None = None


class SessionView(NamedTuple):
    session: UserSession
    current: bool
    live: bool
    status: str
    age_seconds: int
    remaining_seconds: int
    inactive_seconds: int


class TimeoutStatus(NamedTuple):
    expired: bool
    warning: bool
    remaining_seconds: int


def view(
    session: UserSession,
    now: datetime,
    current_session_id: uuid.UUID | None = None,
) -> SessionView:
    """Annotate a session with the fields that are only meaningful at `now`."""
    return SessionView(
        session=session,
        current=current_session_id is not None and session.id == current_session_id,
        live=session.is_live(now),
        status=session.status(now),
        age_seconds=max(0, int((now - session.created_at).total_seconds())),
        remaining_seconds=session.remaining_seconds(now),
        inactive_seconds=max(0, int((now - session.last_activity_at).total_seconds())),
    )


# ── Helpers ──────────────────────────────────────────────────────────

def _open_sessions(user_id: uuid.UUID, now: datetime):
    """Not terminated and inside the absolute deadline; idle expiry is checked in Python."""
    return select(UserSession).where(
        UserSession.user_id == user_id,
        UserSession.terminated_at.is_(None),
        UserSession.expires_at > now,
    ).execution_options(populate_existing=True)


async def _live_sessions(user_id: uuid.UUID, now: datetime, db: AsyncSession) -> list[UserSession]:
    result = await db.execute(_open_sessions(user_id, now))
    return [s for s in result.scalars().all() if s.is_live(now)]


def _family(browser: str, os: str) -> tuple[str, str]:
    """`("Chrome 124", "Windows 10/11")` -> `("Chrome", "Windows")`; versions do not make a new device."""
    return browser.split(" ", 1)[0], os.split(" ", 1)[0]


async def _assess_risk(
    user_id: uuid.UUID,
    ip: str,
    user_agent: str | None,
    device: DeviceInfo,
    now: datetime,
    db: AsyncSession,
) -> str | None:
    if not settings.SESSION_SUSPICIOUS_ACTIVITY_ENABLED:
        return None

    stmt = (
        select(UserSession.origin_ip, UserSession.user_agent, UserSession.browser, UserSession.os)
        .where(
            UserSession.user_id == user_id,
            UserSession.created_at >= now - _RECENT_WINDOW,
        )
        .order_by(UserSession.created_at.desc())
        .limit(_RECENT_LIMIT)
    )
    recent = (await db.execute(stmt)).all()

    recent_ips = {row.origin_ip for row in recent}
    if len(recent_ips) > _RECENT_IP_THRESHOLD and ip not in recent_ips:
        return MANY_IPS

    if user_agent:
        seen = [_family(row.browser, row.os) for row in recent if row.user_agent]
        current = _family(device.browser, device.os)
        if len(seen) > _RECENT_AGENT_THRESHOLD and current not in seen:
            return NEW_DEVICE

    if len(await _live_sessions(user_id, now, db)) >= settings.SESSION_MAX_CONCURRENT:
        return TOO_MANY_SESSIONS
    return None


async def _terminate_ids(
    ids: list[uuid.UUID],
    reason: TerminationReason,
    actor_id: uuid.UUID | None,
    now: datetime,
    db: AsyncSession,
) -> int:
    if not ids:
        return 0
    stmt = (
        update(UserSession)
        .where(UserSession.id.in_(ids), UserSession.terminated_at.is_(None))
        .values(terminated_at=now, terminated_reason=reason.value, terminated_by=actor_id)
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    return result.rowcount


# ── Create ───────────────────────────────────────────────────────────

@storage_errors
async def create(
    user_id: uuid.UUID,
    user_agent: str | None,
    ip: str | None,
    db: AsyncSession,
    *,
    idle_timeout_seconds: int | None = None,
    absolute_ttl_seconds: int | None = None,
    now: datetime | None = None,
) -> tuple[UserSession, str]:
    """
    Open a new session and mint its bearer token.

    Returns the flushed session and the raw JWT; only the token's digest
    is persisted.  Device classification and risk assessment are
    advisory and never prevent the session from being created.
    """
    now = now or utcnow()
    ip = normalize_ip(ip)
    idle = idle_timeout_seconds or settings.SESSION_IDLE_TIMEOUT_SECONDS
    ttl = absolute_ttl_seconds or settings.SESSION_ABSOLUTE_TTL_SECONDS
    device = classify(user_agent)
    reason = await _assess_risk(user_id, ip, user_agent, device, now, db)

    session = UserSession(
        id=uuid.uuid4(),
        user_id=user_id,
        user_agent=user_agent[:512] if user_agent else None,
        browser=device.browser,
        os=device.os,
        device_type=device.device_type,
        origin_ip=ip,
        current_ip=ip,
        created_at=now,
        last_activity_at=now,
        expires_at=now + timedelta(seconds=ttl),
        idle_timeout_seconds=idle,
        suspicious_activity=reason is not None,
        suspicious_reason=reason,
    )
    token = create_session_token(user_id, session.id, session.expires_at)
    session.token_hash = hash_token(token)
    db.add(session)
    await db.flush()

    if reason:
        logger.warning(
            "SUSPICIOUS LOGIN: user %s opened session %s from %s (%s)",
            user_id, session.id, ip, reason,
        )
    return session, token


# ── Read ─────────────────────────────────────────────────────────────

@storage_errors
async def get(session_id: uuid.UUID, db: AsyncSession) -> UserSession | None:
    return await db.get(UserSession, session_id, populate_existing=True)


@storage_errors
async def list_for_user(
    user_id: uuid.UUID,
    db: AsyncSession,
    *,
    current_session_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> list[SessionView]:
    """Live sessions of a user, most recently active first."""
    now = now or utcnow()
    sessions = await _live_sessions(user_id, now, db)
    sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
    return [view(s, now, current_session_id) for s in sessions]


@storage_errors
async def history(
    user_id: uuid.UUID,
    db: AsyncSession,
    status: str = "all",
    page: int = 1,
    page_size: int = 20,
    *,
    current_session_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> tuple[list[SessionView], int]:
    """
    Paginated session history, newest first.

    The `active` filter selects on the absolute deadline only; a row
    that has since gone idle still comes back with derived status
    `expired`.
    """
    now = now or utcnow()
    stmt = select(UserSession).where(UserSession.user_id == user_id)
    expired_reason = TerminationReason.EXPIRED.value

    if status == "active":
        stmt = stmt.where(UserSession.terminated_at.is_(None), UserSession.expires_at > now)
    elif status == "expired":
        stmt = stmt.where(
            or_(
                UserSession.terminated_reason == expired_reason,
                and_(UserSession.terminated_at.is_(None), UserSession.expires_at <= now),
            )
        )
    elif status == "terminated":
        stmt = stmt.where(
            UserSession.terminated_at.is_not(None),
            or_(
                UserSession.terminated_reason.is_(None),
                UserSession.terminated_reason != expired_reason,
            ),
        )

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    page_stmt = (
        stmt.order_by(UserSession.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    sessions = (await db.execute(page_stmt)).scalars().all()
    return [view(s, now, current_session_id) for s in sessions], int(total)


@storage_errors
async def timeout_status(
    session_id: uuid.UUID,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> TimeoutStatus:
    now = now or utcnow()
    session = await db.get(UserSession, session_id, populate_existing=True)
    if session is None or not session.is_live(now):
        return TimeoutStatus(expired=True, warning=False, remaining_seconds=0)
    remaining = session.remaining_seconds(now)
    return TimeoutStatus(
        expired=False,
        warning=remaining <= settings.SESSION_TIMEOUT_WARNING_SECONDS,
        remaining_seconds=remaining,
    )


# ── Touch ────────────────────────────────────────────────────────────

@storage_errors
async def touch(
    session_id: uuid.UUID,
    ip: str | None,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> TouchResult:
    """
    Record activity on a session.

    A dead session (terminated, past its absolute deadline, or idle for
    too long) yields `live=False`; that is an expected outcome, not an
    error.  An address change sets the suspicious flag once; the session
    keeps working.
    """
    now = now or utcnow()
    ip = normalize_ip(ip)

    for _ in range(_TOUCH_ATTEMPTS):
        session = await db.get(UserSession, session_id, populate_existing=True)
        if session is None or not session.is_live(now):
            return TouchResult(live=False)

        values = {"last_activity_at": max(now, session.last_activity_at), "current_ip": ip}
        flagging = (
            settings.SESSION_SUSPICIOUS_ACTIVITY_ENABLED
            and not session.suspicious_activity
            and (ip != session.origin_ip or ip != session.current_ip)
        )
        if flagging:
            values.update(suspicious_activity=True, suspicious_reason=IP_CHANGED)

        stmt = (
            update(UserSession)
            .where(
                UserSession.id == session_id,
                UserSession.terminated_at.is_(None),
                UserSession.last_activity_at == session.last_activity_at,
            )
            .values(**values)
        )
        result = await db.execute(stmt)
        if result.rowcount == 1:
            if flagging:
                logger.warning(
                    "SUSPICIOUS SESSION: %s for user %s moved from %s to %s",
                    session_id, session.user_id, session.current_ip, sanitize(ip),
                )
                return TouchResult(live=True, suspicious=True, reason=IP_CHANGED)
            return TouchResult(
                live=True,
                suspicious=session.suspicious_activity,
                reason=session.suspicious_reason,
            )

    # Lost every round to concurrent writers; answer from a fresh read
    # without writing (a concurrent touch already advanced the activity stamp).
    session = await db.get(UserSession, session_id, populate_existing=True)
    if session is None or not session.is_live(now):
        return TouchResult(live=False)
    return TouchResult(
        live=True,
        suspicious=session.suspicious_activity,
        reason=session.suspicious_reason,
    )


# ── Terminate ────────────────────────────────────────────────────────

@storage_errors
async def terminate(
    session_id: uuid.UUID,
    reason: TerminationReason,
    db: AsyncSession,
    *,
    actor_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Stamp a session as terminated.  Idempotent: an unknown or already
    terminated session is a no-op.  Returns whether this call did it.
    """
    now = now or utcnow()
    stmt = (
        update(UserSession)
        .where(UserSession.id == session_id, UserSession.terminated_at.is_(None))
        .values(terminated_at=now, terminated_reason=reason.value, terminated_by=actor_id)
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    if result.rowcount:
        logger.info("Session %s terminated (%s) by %s", session_id, reason.value, actor_id)
    return result.rowcount == 1


@storage_errors
async def terminate_all_others(
    user_id: uuid.UUID,
    except_session_id: uuid.UUID | None,
    reason: TerminationReason,
    db: AsyncSession,
    *,
    actor_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> int:
    """Terminate every live session of a user except the caller's own."""
    now = now or utcnow()
    ids = [s.id for s in await _live_sessions(user_id, now, db) if s.id != except_session_id]
    count = await _terminate_ids(ids, reason, actor_id, now, db)
    logger.info("Terminated %d other sessions of user %s (%s)", count, user_id, reason.value)
    return count


@storage_errors
async def terminate_all(
    user_id: uuid.UUID,
    reason: TerminationReason,
    db: AsyncSession,
    *,
    actor_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> int:
    """Terminate every live session of a user, the caller's included."""
    now = now or utcnow()
    ids = [s.id for s in await _live_sessions(user_id, now, db)]
    count = await _terminate_ids(ids, reason, actor_id, now, db)
    logger.info("Terminated all %d sessions of user %s (%s)", count, user_id, reason.value)
    return count


# ── Maintenance ──────────────────────────────────────────────────────

@storage_errors
async def sweep_expired(db: AsyncSession, *, now: datetime | None = None) -> int:
    """Stamp `EXPIRED` on sessions that are open in storage but no longer live."""
    now = now or utcnow()
    stmt = select(
        UserSession.id,
        UserSession.last_activity_at,
        UserSession.expires_at,
        UserSession.idle_timeout_seconds,
    ).where(UserSession.terminated_at.is_(None))
    rows = (await db.execute(stmt)).all()
    dead = [
        row.id
        for row in rows
        if now >= row.expires_at
        or (now - row.last_activity_at).total_seconds() > row.idle_timeout_seconds
    ]
    count = await _terminate_ids(dead, TerminationReason.EXPIRED, None, now, db)
    logger.info("Swept %d expired sessions", count)
    return count


@storage_errors
async def purge_terminated(
    db: AsyncSession,
    retention_days: int | None = None,
    *,
    now: datetime | None = None,
) -> int:
    """Hard-delete terminated sessions older than the retention period."""
    now = now or utcnow()
    days = retention_days if retention_days is not None else settings.SESSION_RETENTION_DAYS
    cutoff = now - timedelta(days=days)
    result = await db.execute(
        delete(UserSession)
        .where(UserSession.terminated_at.is_not(None), UserSession.terminated_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    logger.info("Purged %d terminated sessions older than %d days", result.rowcount, days)
    return result.rowcount
