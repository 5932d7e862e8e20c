"""
Admin controller — lockout administration, forced sign-out, user disable.

Every route uses `Depends(require_permission(...))` for enforcement.
Controllers are THIN — they delegate to services and return schemas.

Lockout routes take the subject kind in the path (`account` or `ip`,
case-insensitive).  Account subjects are keyed by user id; the listing
joins the owner's email in for display.
"""

import uuid
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.clock import Clock, get_clock
from helpdesk.core.database import get_db
from helpdesk.core.errors import NotLocked, SessionNotFound
from helpdesk.core.security import normalize_ip
from helpdesk.models.lockout import SubjectKind
from helpdesk.models.session import TerminationReason
from helpdesk.rbac.dependencies import CurrentSession, require_permission
from helpdesk.schemas import (
    CountResponse,
    LockoutOut,
    LockoutPage,
    LockoutStatsOut,
    MessageResponse,
    UnlockResponse,
    UserOut,
)
from helpdesk.services import lockout_guard, session_registry, user_service

router = APIRouter(prefix="/api/admin", tags=["Admin"])


def _subject_kind(kind: str) -> SubjectKind:
    try:
        return SubjectKind(kind.upper())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown lockout kind")


async def _emails_for(keys: list[str], db: AsyncSession) -> dict[str, str]:
    ids = []
    for key in keys:
        try:
            ids.append(uuid.UUID(key))
        except ValueError:
            continue
    emails = await user_service.emails_by_id(ids, db)
    return {str(user_id): email for user_id, email in emails.items()}


# ── Lockouts ─────────────────────────────────────────────────────────
@router.get("/lockouts/{kind}", response_model=LockoutPage)
async def list_lockouts(
    kind: str,
    current: CurrentSession = Depends(require_permission("lockout.read")),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    status_filter: Literal["locked", "unlocked", "all"] = Query("locked", alias="status"),
    search: str | None = Query(None, max_length=255),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
):
    subject_kind = _subject_kind(kind)
    now = clock.now()
    records, total = await lockout_guard.list_records(
        subject_kind, db, status_filter, search, page, page_size, now=now,
    )
    emails = {}
    if subject_kind == SubjectKind.ACCOUNT:
        emails = await _emails_for([r.subject_key for r in records], db)
    return LockoutPage(
        items=[LockoutOut.from_record(r, now, emails.get(r.subject_key)) for r in records],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/lockouts/{kind}/stats", response_model=LockoutStatsOut)
async def lockout_stats(
    kind: str,
    current: CurrentSession = Depends(require_permission("lockout.read")),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    stats = await lockout_guard.stats(_subject_kind(kind), db, now=clock.now())
    return LockoutStatsOut(**stats._asdict())


@router.post("/lockouts/{kind}/{key}/unlock", response_model=UnlockResponse)
async def unlock_subject(
    kind: str,
    key: str,
    current: CurrentSession = Depends(require_permission("lockout.manage")),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Clear a lock early.  Unlocking an account also frees the IP it last failed from."""
    subject_kind = _subject_kind(kind)
    now = clock.now()
    if subject_kind == SubjectKind.IP:
        await lockout_guard.unlock(SubjectKind.IP, normalize_ip(key), current.user.id, db, now=now)
        return UnlockResponse(detail="IP unlocked")

    try:
        user_id = uuid.UUID(key)
    except ValueError:
        raise NotLocked()
    _, released_ip = await lockout_guard.unlock_account(user_id, current.user.id, db, now=now)
    return UnlockResponse(detail="Account unlocked", also_unlocked_ip=released_ip)


@router.post("/lockouts/{kind}/clear-all", response_model=CountResponse)
async def clear_all_lockouts(
    kind: str,
    current: CurrentSession = Depends(require_permission("lockout.manage")),
    db: AsyncSession = Depends(get_db),
):
    """Incident recovery: delete every record of this kind.  Irreversible."""
    count = await lockout_guard.clear_all(_subject_kind(kind), db)
    return CountResponse(detail=f"Cleared {count} lockout record(s)", count=count)


# ── Sessions ─────────────────────────────────────────────────────────
@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def terminate_any_session(
    session_id: uuid.UUID,
    current: CurrentSession = Depends(require_permission("session.admin")),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    if await session_registry.get(session_id, db) is None:
        raise SessionNotFound()
    await session_registry.terminate(
        session_id, TerminationReason.ADMIN_TERMINATED, db,
        actor_id=current.user.id, now=clock.now(),
    )
    return MessageResponse(detail="Session terminated")


@router.delete("/users/{user_id}/sessions", response_model=CountResponse)
async def force_logout_user(
    user_id: uuid.UUID,
    current: CurrentSession = Depends(require_permission("session.admin")),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Sign a user out of every session they have."""
    count = await session_registry.terminate_all(
        user_id, TerminationReason.ADMIN_FORCE_LOGOUT, db,
        actor_id=current.user.id, now=clock.now(),
    )
    return CountResponse(detail=f"Terminated {count} session(s)", count=count)


# ── Users ────────────────────────────────────────────────────────────
@router.post("/users/{user_id}/disable", response_model=UserOut)
async def disable_user(
    user_id: uuid.UUID,
    current: CurrentSession = Depends(require_permission("user.manage")),
    db: AsyncSession = Depends(get_db),
):
    if user_id == current.user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot disable your own account",
        )
    user, _ = await user_service.disable_user(user_id, current.user.id, db)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserOut(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        status=user.status.value,
        created_at=user.created_at,
    )
