"""
Auth controller — login, logout, session timeout polling and identity.

Login is PUBLIC (no permission dependency).  The timeout probe reads the
session without touching it, so polling never keeps a session alive.
Everything else requires a live session.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from helpdesk.core.clock import Clock, get_clock
from helpdesk.core.database import get_db
from helpdesk.core.security import client_ip, oauth2_scheme
from helpdesk.rbac.dependencies import CurrentSession, get_current_session, peek_session
from helpdesk.schemas import (
    LoginRequest,
    MeOut,
    MessageResponse,
    TimeoutStatusOut,
    TokenResponse,
)
from helpdesk.services import auth_service, session_registry

router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Authenticate with email + password → receive a session-bound JWT."""
    result = await auth_service.attempt_login(
        body.email,
        body.password,
        client_ip(request),
        request.headers.get("user-agent"),
        db,
        now=clock.now(),
    )
    return TokenResponse(
        access_token=result.access_token,
        token_type=result.token_type,
        user_id=str(result.user.id),
        session_id=str(result.session.id),
        expires_at=result.session.expires_at,
        roles=[r.name for r in result.user.roles],
    )


@router.delete("/logout", response_model=MessageResponse)
async def logout(
    current: CurrentSession = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Terminate the current session (server-side logout)."""
    await auth_service.logout(current.session.id, current.user.id, db, now=clock.now())
    return MessageResponse(detail="Logged out successfully")


@router.get("/session/timeout", response_model=TimeoutStatusOut)
async def session_timeout(
    token: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Seconds left before the session ends, and whether to warn the user."""
    session = await peek_session(token, db)
    if session is None:
        return TimeoutStatusOut(expired=True, warning=False, remaining_seconds=0)
    status = await session_registry.timeout_status(session.id, db, now=clock.now())
    return TimeoutStatusOut(**status._asdict())


@router.get("/me", response_model=MeOut)
async def me(current: CurrentSession = Depends(get_current_session)):
    user = current.user
    return MeOut(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        status=user.status.value,
        roles=[r.name for r in user.roles],
        permissions=sorted({p.code for r in user.roles for p in r.permissions}),
        session_id=current.session.id,
        suspicious_activity=current.suspicious,
        suspicious_reason=current.suspicious_reason,
    )
