from __future__ import annotations

"""
User session model — server-side session registry.

Each row is bound 1:1 to a bearer token through `token_hash` (the
SHA-256 of the issued JWT), but the primary key is an independent
random UUID so the id can be shown in the UI without leaking the
credential.

Liveness is never stored.  A session is live iff it has not been
terminated, the absolute deadline has not passed, and the idle gap
since `last_activity_at` is within `idle_timeout_seconds`.
Terminated rows are kept as history until the retention sweep.
"""

import enum
import uuid
from datetime import datetime, timedelta

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from helpdesk.models.base import Base, UTCDateTime


class DeviceType(str, enum.Enum):
    DESKTOP = "DESKTOP"
    MOBILE = "MOBILE"
    TABLET = "TABLET"
    OTHER = "OTHER"


class TerminationReason(str, enum.Enum):
    USER_LOGOUT = "USER_LOGOUT"
    USER_LOGOUT_OTHERS = "USER_LOGOUT_OTHERS"
    USER_TERMINATED = "USER_TERMINATED"
    ADMIN_TERMINATED = "ADMIN_TERMINATED"
    ADMIN_FORCE_LOGOUT = "ADMIN_FORCE_LOGOUT"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    EXPIRED = "EXPIRED"


class UserSession(Base):
    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token_hash: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)

    # ── Device descriptor (derived once from the user agent) ─────────
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    browser: Mapped[str] = mapped_column(String(64), nullable=False, default="Unknown")
    os: Mapped[str] = mapped_column(String(64), nullable=False, default="Unknown")
    device_type: Mapped[DeviceType] = mapped_column(
        Enum(DeviceType, name="session_device_type"),
        nullable=False,
        default=DeviceType.OTHER,
    )

    # ── Network ──────────────────────────────────────────────────────
    origin_ip: Mapped[str] = mapped_column(String(64), nullable=False)
    current_ip: Mapped[str] = mapped_column(String(64), nullable=False)
    location: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # ── Lifetime ─────────────────────────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    idle_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)

    # ── Advisory flags ───────────────────────────────────────────────
    suspicious_activity: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    suspicious_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # ── Termination (set once, never cleared) ────────────────────────
    terminated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    terminated_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    terminated_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_sessions_user_terminated", "user_id", "terminated_at"),
    )

    @property
    def idle_deadline(self) -> datetime:
        return self.last_activity_at + timedelta(seconds=self.idle_timeout_seconds)

    def is_live(self, now: datetime) -> bool:
        return (
            self.terminated_at is None
            and now < self.expires_at
            and (now - self.last_activity_at).total_seconds() <= self.idle_timeout_seconds
        )

    def remaining_seconds(self, now: datetime) -> int:
        """Seconds until the nearer of the idle and absolute deadlines."""
        if not self.is_live(now):
            return 0
        deadline = min(self.expires_at, self.idle_deadline)
        return max(0, int((deadline - now).total_seconds()))

    def status(self, now: datetime) -> str:
        if self.terminated_at is not None:
            # swept sessions died of old age, not of a logout
            if self.terminated_reason == TerminationReason.EXPIRED.value:
                return "expired"
            return "terminated"
        return "active" if self.is_live(now) else "expired"

    def __repr__(self) -> str:
        return f"<UserSession {self.id} user={self.user_id} live_until={self.expires_at}>"
