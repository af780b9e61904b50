"""
Clock -- injectable time source.

Services never call ``datetime.now()`` directly; they receive a Clock.
Status-history timestamps, ``start_time`` / ``completed_at`` stamps and the
derived "overdue" property all read from the same injected instance, which
makes every lifecycle test deterministic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        ``now()`` returns a timezone-aware UTC ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time (aware, UTC)."""
        ...


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value until ``advance()``, ``tick()`` or
    ``set_time()`` is called.  Safe to share between threads: reads are
    plain attribute access.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._offset = timedelta(0)

    def now(self) -> datetime:
        return self._fixed_time + self._offset

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific aware time."""
        if time.tzinfo is None:
            raise ValueError("DeterministicClock requires an aware datetime")
        self._fixed_time = time
        self._offset = timedelta(0)

    def advance(self, seconds: float = 1, **kwargs: float) -> datetime:
        """Advance by ``seconds`` (plus any timedelta kwargs) and return the new time."""
        self._offset += timedelta(seconds=seconds, **kwargs)
        return self.now()

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        return self.advance(1)
