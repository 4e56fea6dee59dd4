"""
Clock -- injectable time source.

Services and the timer layer never call ``datetime.now()`` directly; they
receive a ``Clock``.  Auto-approval deadlines, history timestamps and the
"urgent" cut-off are all computed from it, so tests can drive time
explicitly.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Abstract clock.  ``now()`` always returns an aware UTC datetime."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def after(self, *, hours: float = 0, seconds: float = 0) -> datetime:
        """Return ``now()`` shifted forward."""
        return self.now() + timedelta(hours=hours, seconds=seconds)


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value until ``advance()`` or ``set_time()``
    is called.  Thread-safe enough for tests: reads and writes are single
    attribute assignments.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._current = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        if time.tzinfo is None:
            time = time.replace(tzinfo=timezone.utc)
        self._current = time

    def advance(self, seconds: float = 0, *, hours: float = 0) -> datetime:
        """Advance the clock (one second when called bare) and return the new time."""
        if not seconds and not hours:
            seconds = 1
        self._current = self._current + timedelta(hours=hours, seconds=seconds)
        return self._current
