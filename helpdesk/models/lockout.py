from __future__ import annotations

"""
Lockout record — one row per (subject kind, subject key).

The same table guards accounts (key = user id) and source IPs
(key = normalized address).  Rows are created on the first failure,
reset (never deleted) on success so `last_failed_at` survives for
reporting, and only removed by the bulk "clear all" action.

`failed_attempts` is only ever written through the single-statement
updates in `helpdesk.services.lockout_guard`.
"""

import enum
import math
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from helpdesk.models.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin


class SubjectKind(str, enum.Enum):
    ACCOUNT = "ACCOUNT"
    IP = "IP"


class LockoutRecord(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "lockout_records"

    subject_kind: Mapped[SubjectKind] = mapped_column(
        Enum(SubjectKind, name="lockout_subject_kind"),
        nullable=False,
    )
    subject_key: Mapped[str] = mapped_column(String(255), nullable=False)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_failed_context: Mapped[str | None] = mapped_column(String(255), nullable=True)
    unlocked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    unlocked_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("subject_kind", "subject_key", name="uq_lockout_records_subject"),
        CheckConstraint("failed_attempts >= 0", name="ck_lockout_records_failed_attempts"),
    )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def remaining_seconds(self, now: datetime) -> int:
        if not self.is_locked(now):
            return 0
        return max(1, math.ceil((self.locked_until - now).total_seconds()))

    def __repr__(self) -> str:
        return f"<LockoutRecord {self.subject_kind.value}:{self.subject_key} attempts={self.failed_attempts}>"
