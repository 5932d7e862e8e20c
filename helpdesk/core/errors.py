"""
Domain errors raised by the authentication core.

Only ``InvalidCredentials`` and ``LockedOut`` are meant to reach the end
user verbatim.  Everything storage-related is collapsed into
``StorageUnavailable`` so callers never see driver detail.
"""

import functools
import logging
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HelpdeskError(Exception):
    """Base class for every error the core raises on purpose."""

    code = "ERROR"


class InvalidCredentials(HelpdeskError):
    """Generic login failure; never says whether the account exists."""

    code = "INVALID_CREDENTIALS"


class LockedOut(HelpdeskError):
    """The account or the source IP is inside a lock window."""

    code = "LOCKED_OUT"

    def __init__(self, remaining_seconds: int):
        super().__init__(f"locked for another {remaining_seconds}s")
        self.remaining_seconds = remaining_seconds


class StorageUnavailable(HelpdeskError):
    """Transient infrastructure failure; the caller should retry with backoff."""

    code = "STORAGE_UNAVAILABLE"


class NotLocked(HelpdeskError):
    """Unlock requested for a subject that has nothing to clear."""

    code = "NOT_LOCKED"


class SessionNotFound(HelpdeskError):
    code = "SESSION_NOT_FOUND"


def storage_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Re-raise any SQLAlchemy failure inside ``func`` as ``StorageUnavailable``."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("Storage failure in %s", func.__qualname__, exc_info=True)
            raise StorageUnavailable() from exc

    return wrapper
