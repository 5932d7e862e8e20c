from __future__ import annotations

"""
User model.

Only the columns the authentication core reads live here: the login
identifier, the password digest and the account status.  Ticket
ownership, agent groups and the rest of the helpdesk profile hang off
other tables.
"""

import enum
from typing import TYPE_CHECKING

from sqlalchemy import Enum, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from helpdesk.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from helpdesk.models.role import user_roles

if TYPE_CHECKING:
    from helpdesk.models.role import Role


class UserStatus(str, enum.Enum):
    INVITED = "INVITED"
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(256), unique=True, index=True, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(512), nullable=True)  # null while INVITED
    full_name: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[UserStatus] = mapped_column(
        Enum(UserStatus, name="user_status"),
        default=UserStatus.ACTIVE,
        nullable=False,
    )

    roles: Mapped[list["Role"]] = relationship(  # noqa: F821
        secondary=user_roles,
        back_populates="users",
        lazy="selectin",
    )

    @property
    def can_authenticate(self) -> bool:
        return self.status == UserStatus.ACTIVE and bool(self.password_hash)

    def __repr__(self) -> str:
        return f"<User {self.email}>"
