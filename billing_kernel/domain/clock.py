"""
Injectable time source.

Services take a ``Clock`` instead of calling ``datetime.now()``: billing
periods, flag timestamps and ``observed_at`` provenance all come from it,
so a test run (or a replayed run) produces the same output.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Timezone-aware current time."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Fixed time that only moves when ``advance`` is called."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 1) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now
