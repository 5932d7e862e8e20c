"""
Lockout guard — brute-force counters for accounts and source IPs.

One mechanism, parameterized by `SubjectKind`:
- ACCOUNT rows are keyed by user id, IP rows by normalized address.
- Each kind has its own `LockoutPolicy` (max attempts, lock duration,
  optional attempt window).

Concurrency rules:
- `failed_attempts` is never read-then-written in Python.  Every
  mutation is one `UPDATE ... RETURNING` statement, so two concurrent
  failures against the same subject serialize on the row and both
  increments land.
- The row is created lazily on the first failure.  Two first failures
  racing each other both try the INSERT inside a savepoint; the loser
  hits the unique constraint and falls back to the UPDATE.

Counter reset policy:
- A failure after an already-expired lock starts a new series at 1.
- With an attempt window configured, a failure whose predecessor is
  older than the window also starts a new series at 1.
- Otherwise counters only reset on success or admin unlock.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import NamedTuple

from sqlalchemy import and_, case, delete, func, insert, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.clock import utcnow
from helpdesk.core.config import settings
from helpdesk.core.errors import NotLocked, storage_errors
from helpdesk.core.log_utils import sanitize
from helpdesk.models.base import UTCDateTime
from helpdesk.models.lockout import LockoutRecord, SubjectKind
from helpdesk.models.user import User

logger = logging.getLogger(__name__)


class LockoutPolicy(NamedTuple):
    max_attempts: int
    lockout_duration_seconds: int
    attempt_window_seconds: int | None = None


class LockStatus(NamedTuple):
    locked: bool
    remaining_seconds: int = 0


class FailureResult(NamedTuple):
    failed_attempts: int
    locked: bool
    attempts_remaining: int
    remaining_seconds: int = 0
    newly_locked: bool = False


class LockoutStats(NamedTuple):
    total: int
    locked: int
    unlocked: int
    total_failed_attempts: int
    locked_in_last_24h: int


def policy_for(kind: SubjectKind) -> LockoutPolicy:
    if kind == SubjectKind.ACCOUNT:
        return LockoutPolicy(
            settings.LOCKOUT_ACCOUNT_MAX_ATTEMPTS,
            settings.LOCKOUT_ACCOUNT_DURATION_SECONDS,
            settings.LOCKOUT_ACCOUNT_WINDOW_SECONDS,
        )
    return LockoutPolicy(
        settings.LOCKOUT_IP_MAX_ATTEMPTS,
        settings.LOCKOUT_IP_DURATION_SECONDS,
        settings.LOCKOUT_IP_WINDOW_SECONDS,
    )


# ── Helpers ──────────────────────────────────────────────────────────

def _subject(kind: SubjectKind, key: str):
    return and_(LockoutRecord.subject_kind == kind, LockoutRecord.subject_key == key)


def _ts(value: datetime):
    return literal(value, UTCDateTime())


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _lock_active(now: datetime):
    return and_(LockoutRecord.locked_until.is_not(None), LockoutRecord.locked_until > now)


async def get_record(kind: SubjectKind, key: str, db: AsyncSession) -> LockoutRecord | None:
    stmt = (
        select(LockoutRecord)
        .where(_subject(kind, key))
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _increment(
    kind: SubjectKind,
    key: str,
    context: str | None,
    policy: LockoutPolicy,
    now: datetime,
    db: AsyncSession,
):
    active_lock = _lock_active(now)
    restart = and_(LockoutRecord.locked_until.is_not(None), LockoutRecord.locked_until <= now)
    if policy.attempt_window_seconds:
        cutoff = now - timedelta(seconds=policy.attempt_window_seconds)
        restart = or_(
            restart,
            and_(LockoutRecord.last_failed_at.is_not(None), LockoutRecord.last_failed_at < cutoff),
        )
    restart = and_(~active_lock, restart)

    new_count = case((restart, 1), else_=LockoutRecord.failed_attempts + 1)
    engaging = and_(~active_lock, new_count >= policy.max_attempts)
    lock_until = now + timedelta(seconds=policy.lockout_duration_seconds)

    stmt = (
        update(LockoutRecord)
        .where(_subject(kind, key))
        .values(
            failed_attempts=new_count,
            locked_until=case(
                (active_lock, LockoutRecord.locked_until),
                (engaging, _ts(lock_until)),
                else_=None,
            ),
            locked_at=case((engaging, _ts(now)), else_=LockoutRecord.locked_at),
            last_failed_at=now,
            last_failed_context=context,
            updated_at=now,
        )
        .returning(
            LockoutRecord.failed_attempts,
            LockoutRecord.locked_until,
            LockoutRecord.locked_at,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.one_or_none()


async def _create(
    kind: SubjectKind,
    key: str,
    context: str | None,
    policy: LockoutPolicy,
    now: datetime,
    db: AsyncSession,
) -> tuple[int, datetime | None, datetime | None]:
    engaging = policy.max_attempts <= 1
    locked_until = now + timedelta(seconds=policy.lockout_duration_seconds) if engaging else None
    locked_at = now if engaging else None
    async with db.begin_nested():
        await db.execute(
            insert(LockoutRecord).values(
                id=uuid.uuid4(),
                subject_kind=kind,
                subject_key=key,
                failed_attempts=1,
                locked_until=locked_until,
                locked_at=locked_at,
                last_failed_at=now,
                last_failed_context=context,
                created_at=now,
                updated_at=now,
            )
        )
    return 1, locked_until, locked_at


# ── Operations ───────────────────────────────────────────────────────

@storage_errors
async def is_locked(
    kind: SubjectKind,
    key: str,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> LockStatus:
    """Read-only check: locked iff `locked_until` is set and in the future."""
    now = now or utcnow()
    record = await get_record(kind, key, db)
    if record is None or not record.is_locked(now):
        return LockStatus(locked=False)
    return LockStatus(locked=True, remaining_seconds=record.remaining_seconds(now))


@storage_errors
async def record_failure(
    kind: SubjectKind,
    key: str,
    db: AsyncSession,
    *,
    context: str | None = None,
    policy: LockoutPolicy | None = None,
    now: datetime | None = None,
) -> FailureResult:
    """Atomically count one failed attempt and engage the lock at the threshold."""
    policy = policy or policy_for(kind)
    now = now or utcnow()
    context = sanitize(context) if context else None

    row = await _increment(kind, key, context, policy, now, db)
    if row is not None:
        failed, locked_until, locked_at = row
    else:
        try:
            failed, locked_until, locked_at = await _create(kind, key, context, policy, now, db)
        except IntegrityError:
            # Lost the creation race; the row exists now.
            row = await _increment(kind, key, context, policy, now, db)
            failed, locked_until, locked_at = row

    locked = locked_until is not None and now < locked_until
    # later failures in the same instant see the same locked_at but a higher count
    newly_locked = locked and locked_at == now and failed <= policy.max_attempts
    remaining = max(1, math.ceil((locked_until - now).total_seconds())) if locked else 0

    if newly_locked:
        logger.warning(
            "LOCKOUT ENGAGED: %s %s after %d failed attempts, for %ds (last context: %s)",
            kind.value,
            sanitize(key),
            failed,
            policy.lockout_duration_seconds,
            context or "-",
        )

    return FailureResult(
        failed_attempts=failed,
        locked=locked,
        attempts_remaining=0 if locked else max(0, policy.max_attempts - failed),
        remaining_seconds=remaining,
        newly_locked=newly_locked,
    )


@storage_errors
async def record_success(
    kind: SubjectKind,
    key: str,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> None:
    """Reset the counter and clear the lock.  Idempotent; never creates a row."""
    now = now or utcnow()
    stmt = (
        update(LockoutRecord)
        .where(
            _subject(kind, key),
            or_(LockoutRecord.failed_attempts > 0, LockoutRecord.locked_until.is_not(None)),
        )
        .values(failed_attempts=0, locked_until=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.execute(stmt)


@storage_errors
async def unlock(
    kind: SubjectKind,
    key: str,
    actor_id: uuid.UUID | None,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> LockoutRecord:
    """
    Administrative override.  Clears counter and lock and stamps who did it.

    Raises `NotLocked` when there is nothing to clear (no row, or a row
    that is already at zero with no lock); callers treat it as a
    harmless no-op.
    """
    now = now or utcnow()
    stmt = (
        update(LockoutRecord)
        .where(
            _subject(kind, key),
            or_(LockoutRecord.failed_attempts > 0, LockoutRecord.locked_until.is_not(None)),
        )
        .values(
            failed_attempts=0,
            locked_until=None,
            unlocked_at=now,
            unlocked_by=actor_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        raise NotLocked()

    logger.info("LOCKOUT CLEARED: %s %s by %s", kind.value, sanitize(key), actor_id)
    return await get_record(kind, key, db)


@storage_errors
async def unlock_account(
    user_id: uuid.UUID,
    actor_id: uuid.UUID | None,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> tuple[LockoutRecord, str | None]:
    """
    Unlock an account and, if the IP it last failed from is currently
    locked, that IP as well.  Returns the record and the IP released.
    """
    now = now or utcnow()
    record = await unlock(SubjectKind.ACCOUNT, str(user_id), actor_id, db, now=now)

    ip = record.last_failed_context
    if not ip:
        return record, None

    stmt = (
        update(LockoutRecord)
        .where(_subject(SubjectKind.IP, ip), _lock_active(now))
        .values(
            failed_attempts=0,
            locked_until=None,
            unlocked_at=now,
            unlocked_by=actor_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount:
        logger.info("LOCKOUT CLEARED: IP %s together with account %s", ip, user_id)
        return record, ip
    return record, None


@storage_errors
async def clear_all(kind: SubjectKind, db: AsyncSession) -> int:
    """Bulk incident-recovery reset: delete every record of `kind`.  Irreversible."""
    result = await db.execute(
        delete(LockoutRecord)
        .where(LockoutRecord.subject_kind == kind)
        .execution_options(synchronize_session=False)
    )
    logger.warning("LOCKOUT RECORDS CLEARED: %d %s records deleted", result.rowcount, kind.value)
    return result.rowcount


@storage_errors
async def stats(
    kind: SubjectKind,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> LockoutStats:
    now = now or utcnow()
    locked = _lock_active(now)
    day_ago = now - timedelta(hours=24)
    stmt = select(
        func.count(LockoutRecord.id),
        func.coalesce(func.sum(case((locked, 1), else_=0)), 0),
        func.coalesce(func.sum(LockoutRecord.failed_attempts), 0),
        func.coalesce(
            func.sum(case((and_(locked, LockoutRecord.locked_at >= day_ago), 1), else_=0)),
            0,
        ),
    ).where(LockoutRecord.subject_kind == kind)
    total, locked_count, failed_sum, last_24h = (await db.execute(stmt)).one()
    return LockoutStats(
        total=int(total),
        locked=int(locked_count),
        unlocked=int(total) - int(locked_count),
        total_failed_attempts=int(failed_sum),
        locked_in_last_24h=int(last_24h),
    )


@storage_errors
async def list_records(
    kind: SubjectKind,
    db: AsyncSession,
    status: str = "locked",
    search: str | None = None,
    page: int = 1,
    page_size: int = 50,
    *,
    now: datetime | None = None,
) -> tuple[list[LockoutRecord], int]:
    """
    Page through records of one kind.

    `status` is `locked`, `unlocked` (never locked or lock ran out) or
    `all`.  `search` matches the subject key, and for accounts also the
    owning user's email.
    """
    now = now or utcnow()
    stmt = select(LockoutRecord).where(LockoutRecord.subject_kind == kind)

    if status == "locked":
        stmt = stmt.where(_lock_active(now))
    elif status == "unlocked":
        stmt = stmt.where(
            or_(LockoutRecord.locked_until.is_(None), LockoutRecord.locked_until <= now)
        )

    if search:
        pattern = f"%{_escape_like(search.strip())}%"
        condition = LockoutRecord.subject_key.ilike(pattern, escape="\\")
        if kind == SubjectKind.ACCOUNT:
            user_ids = (
                await db.execute(select(User.id).where(User.email.ilike(pattern, escape="\\")).limit(500))
            ).scalars().all()
            if user_ids:
                condition = or_(
                    condition,
                    LockoutRecord.subject_key.in_([str(uid) for uid in user_ids]),
                )
        stmt = stmt.where(condition)

    total = (
        await db.execute(select(func.count()).select_from(stmt.subquery()))
    ).scalar_one()

    page_stmt = (
        stmt.order_by(LockoutRecord.updated_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .execution_options(populate_existing=True)
    )
    records = (await db.execute(page_stmt)).scalars().all()
    return list(records), int(total)
