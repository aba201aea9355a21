"""
Clock -- injectable time source.

Responsibility:
    Services, engines and the sweeper never call ``datetime.now()`` directly;
    they receive a Clock.  SLA arithmetic, query deadlines and audit
    timestamps are therefore reproducible in tests.

Architecture position:
    Kernel > Domain -- pure, zero I/O (except SystemClock).
"""

import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now()`` returns a timezone-aware UTC ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value until ``advance()`` or ``set_time()``
    is called.  Safe to share between worker threads.
    """

    DEFAULT_TIME = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)  # a Monday

    def __init__(self, fixed_time: datetime | None = None):
        self._time = (fixed_time or self.DEFAULT_TIME).astimezone(UTC)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def set_time(self, time: datetime) -> None:
        if time.tzinfo is None:
            raise ValueError("DeterministicClock requires an aware datetime")
        with self._lock:
            self._time = time.astimezone(UTC)

    def advance(self, seconds: float = 0, *, minutes: float = 0, hours: float = 0,
                days: float = 0) -> datetime:
        """Move the clock forward and return the new time."""
        delta = timedelta(seconds=seconds, minutes=minutes, hours=hours, days=days)
        if delta < timedelta(0):
            raise ValueError("Clock cannot move backwards")
        with self._lock:
            self._time = self._time + delta
            return self._time

    def tick(self) -> datetime:
        return self.advance(1)
