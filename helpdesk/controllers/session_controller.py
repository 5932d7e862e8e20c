"""
Session controller — self-service view and control of one's own sessions.

Controllers are THIN — they delegate to the session registry and
return schemas.
"""

import uuid
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.clock import Clock, get_clock
from helpdesk.core.database import get_db
from helpdesk.core.errors import SessionNotFound
from helpdesk.models.session import TerminationReason
from helpdesk.rbac.dependencies import CurrentSession, require_permission
from helpdesk.schemas import CountResponse, MessageResponse, SessionOut, SessionPage
from helpdesk.services import session_registry

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


@router.get("", response_model=list[SessionOut])
async def list_sessions(
    current: CurrentSession = Depends(require_permission("session.read")),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Live sessions of the caller; the one making this request is `current`."""
    views = await session_registry.list_for_user(
        current.user.id, db, current_session_id=current.session.id, now=clock.now(),
    )
    return [SessionOut.from_view(v) for v in views]


@router.get("/history", response_model=SessionPage)
async def session_history(
    current: CurrentSession = Depends(require_permission("session.read")),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    status_filter: Literal["active", "expired", "terminated", "all"] = Query("all", alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    views, total = await session_registry.history(
        current.user.id,
        db,
        status_filter,
        page,
        page_size,
        current_session_id=current.session.id,
        now=clock.now(),
    )
    return SessionPage(
        items=[SessionOut.from_view(v) for v in views],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.delete("/{session_id}", response_model=MessageResponse)
async def terminate_session(
    session_id: uuid.UUID,
    current: CurrentSession = Depends(require_permission("session.manage")),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """End one of the caller's other sessions."""
    if session_id == current.session.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Use logout to end the current session",
        )
    target = await session_registry.get(session_id, db)
    # Other users' sessions are indistinguishable from missing ones
    if target is None or target.user_id != current.user.id:
        raise SessionNotFound()

    await session_registry.terminate(
        session_id, TerminationReason.USER_TERMINATED, db,
        actor_id=current.user.id, now=clock.now(),
    )
    return MessageResponse(detail="Session terminated")


@router.delete("", response_model=CountResponse)
async def terminate_other_sessions(
    current: CurrentSession = Depends(require_permission("session.manage")),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Log out everywhere else."""
    count = await session_registry.terminate_all_others(
        current.user.id,
        current.session.id,
        TerminationReason.USER_LOGOUT_OTHERS,
        db,
        actor_id=current.user.id,
        now=clock.now(),
    )
    return CountResponse(detail=f"Terminated {count} other session(s)", count=count)
