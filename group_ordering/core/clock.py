"""
Injectable UTC Clock

Engine code never calls datetime.now() directly; it asks a Clock. Production
uses SystemClock, tests use FixedClock and advance it explicitly so deadline
and activity behaviour is deterministic.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Injectable time source."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Real wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """
    Test clock that only moves when told to.

    Example:
        >>> clock = FixedClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
        >>> clock.advance(minutes=5)
    """

    def __init__(self, fixed: datetime):
        if fixed.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")
        self._now = fixed

    def now(self) -> datetime:
        return self._now

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now
