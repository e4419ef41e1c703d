"""
Time source for engagement components.

Every component takes a clock instead of calling datetime.now() so that
sweeps can be replayed against a fixed instant in tests.
"""
from datetime import datetime, timedelta, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SystemClock:
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return _utcnow()


class FrozenClock:
    """A clock pinned to one instant until advanced explicitly."""

    def __init__(self, now: datetime):
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self._now = now

    def advance(self, **kwargs) -> datetime:
        """Move forward by timedelta keyword arguments, e.g. advance(days=14)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now
