"""
Clock -- injectable source of "now".

Engine and service code never call ``datetime.now()`` directly: transaction
timestamps, lot expiry and expiration reference times all come from a
Clock, so a test can pin time and step it across expiry boundaries.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


def as_utc(moment: datetime | None) -> datetime | None:
    """
    ``moment`` as an aware UTC datetime.

    Naive values are taken to be UTC already, the same reading the
    database layer gives timestamps stored without an offset.
    """
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class Clock(ABC):
    """``now()`` always returns an aware UTC datetime."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Frozen clock for tests.  Time moves only through ``advance`` or
    ``set_time``.
    """

    def __init__(self, start: datetime | None = None):
        self._now = as_utc(start or datetime(2026, 1, 1, tzinfo=timezone.utc))

    def now(self) -> datetime:
        return self._now

    def set_time(self, moment: datetime) -> None:
        self._now = as_utc(moment)

    def advance(self, seconds: float = 0, *, days: int = 0) -> datetime:
        """Move forward and return the new time."""
        self._now += timedelta(days=days, seconds=seconds)
        return self._now
