"""
Injectable wall clock.

Services take an optional ``now`` keyword and fall back to ``utcnow()``;
routes resolve the clock through ``get_clock`` so tests can freeze it
with ``app.dependency_overrides``.
"""

from datetime import datetime, timezone


class Clock:
    """Timezone-aware UTC wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


system_clock = Clock()


def utcnow() -> datetime:
    return system_clock.now()


def get_clock() -> Clock:
    """FastAPI dependency returning the process clock."""
    return system_clock
