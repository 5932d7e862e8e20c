"""
Pydantic schemas for request / response serialization.

Kept in a single file for now — split per-domain when it grows.
Schemas are deliberately decoupled from SQLAlchemy models so the
API surface can evolve independently of the DB layer.  Derived
fields (`current`, `age`, `remaining`, `inactive`, `status`) are
filled from the services' read-time views and never stored.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from helpdesk.models.lockout import LockoutRecord
from helpdesk.services.session_registry import SessionView


def humanize(seconds: int) -> str:
    """`3725` → `1h 2m`; `45` → `45s`."""
    if seconds < 60:
        return f"{seconds}s"
    minutes, _ = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


# ── Auth ─────────────────────────────────────────────────────────────
class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=256)
    password: str = Field(min_length=1, max_length=1024)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    session_id: str
    expires_at: datetime
    roles: list[str]


class TimeoutStatusOut(BaseModel):
    expired: bool
    warning: bool
    remaining_seconds: int


class MeOut(BaseModel):
    id: uuid.UUID
    email: str
    full_name: str
    status: str
    roles: list[str] = []
    permissions: list[str] = []
    session_id: uuid.UUID
    suspicious_activity: bool = False
    suspicious_reason: str | None = None


# ── Sessions ─────────────────────────────────────────────────────────
class SessionOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    browser: str
    os: str
    device_type: str
    origin_ip: str
    current_ip: str
    location: str | None = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    suspicious_activity: bool
    suspicious_reason: str | None = None
    terminated_at: datetime | None = None
    terminated_reason: str | None = None
    current: bool = False
    status: str
    age: str
    remaining: str
    inactive: str

    @classmethod
    def from_view(cls, v: SessionView) -> "SessionOut":
        s = v.session
        return cls(
            id=s.id,
            user_id=s.user_id,
            browser=s.browser,
            os=s.os,
            device_type=s.device_type.value,
            origin_ip=s.origin_ip,
            current_ip=s.current_ip,
            location=s.location,
            created_at=s.created_at,
            last_activity_at=s.last_activity_at,
            expires_at=s.expires_at,
            suspicious_activity=s.suspicious_activity,
            suspicious_reason=s.suspicious_reason,
            terminated_at=s.terminated_at,
            terminated_reason=s.terminated_reason,
            current=v.current,
            status=v.status,
            age=humanize(v.age_seconds),
            remaining=humanize(v.remaining_seconds),
            inactive=humanize(v.inactive_seconds),
        )


class SessionPage(BaseModel):
    items: list[SessionOut]
    total: int
    page: int
    page_size: int


class CountResponse(BaseModel):
    detail: str
    count: int


# ── Lockouts ─────────────────────────────────────────────────────────
class LockoutOut(BaseModel):
    id: uuid.UUID
    subject_kind: str
    subject_key: str
    email: str | None = None
    failed_attempts: int
    locked: bool
    remaining_seconds: int
    locked_until: datetime | None = None
    locked_at: datetime | None = None
    last_failed_at: datetime | None = None
    last_failed_context: str | None = None
    unlocked_at: datetime | None = None
    unlocked_by: uuid.UUID | None = None

    @classmethod
    def from_record(cls, r: LockoutRecord, now: datetime, email: str | None = None) -> "LockoutOut":
        return cls(
            id=r.id,
            subject_kind=r.subject_kind.value,
            subject_key=r.subject_key,
            email=email,
            failed_attempts=r.failed_attempts,
            locked=r.is_locked(now),
            remaining_seconds=r.remaining_seconds(now),
            locked_until=r.locked_until,
            locked_at=r.locked_at,
            last_failed_at=r.last_failed_at,
            last_failed_context=r.last_failed_context,
            unlocked_at=r.unlocked_at,
            unlocked_by=r.unlocked_by,
        )


class LockoutPage(BaseModel):
    items: list[LockoutOut]
    total: int
    page: int
    page_size: int


class LockoutStatsOut(BaseModel):
    total: int
    locked: int
    unlocked: int
    total_failed_attempts: int
    locked_in_last_24h: int


class UnlockResponse(BaseModel):
    detail: str
    also_unlocked_ip: str | None = None


# ── User ─────────────────────────────────────────────────────────────
class UserOut(BaseModel):
    id: uuid.UUID
    email: str
    full_name: str
    status: str
    created_at: datetime


# ── Generic ──────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    detail: str
