"""Clock sources.

All lifecycle code asks a ``Clock`` for the current instant instead of reading
the wall clock directly, so availability can be resolved against any instant.
Instants are naive UTC datetimes, matching the ``DateTime`` columns.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone


def naive_utc(dt: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed to be UTC already."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


class Clock(ABC):
    """Abstract source of the current instant."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current instant as a naive UTC datetime."""
        pass


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock(Clock):
    """Clock frozen at a given instant; can be moved explicitly."""

    def __init__(self, instant: datetime):
        self._instant = naive_utc(instant)

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = naive_utc(instant)


system_clock = SystemClock()
