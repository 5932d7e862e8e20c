"""
Models package — import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for Alembic autogenerate and the
test suite's `create_all`).
"""

from helpdesk.models.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin
from helpdesk.models.role import Permission, Role, role_permissions, user_roles
from helpdesk.models.user import User, UserStatus
from helpdesk.models.lockout import LockoutRecord, SubjectKind
from helpdesk.models.session import DeviceType, TerminationReason, UserSession

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDPrimaryKeyMixin",
    "Permission",
    "Role",
    "role_permissions",
    "user_roles",
    "User",
    "UserStatus",
    "LockoutRecord",
    "SubjectKind",
    "DeviceType",
    "TerminationReason",
    "UserSession",
]
