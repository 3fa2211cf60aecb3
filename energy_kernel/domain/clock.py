"""
Clock -- injectable UTC time source.

Responsibility:
    Entry timestamps and lease ages come from a Clock handed to the
    service at construction, never from ``datetime.now()`` at the call
    site. Tests use ``DeterministicClock`` to expire leases on demand.

Architecture position:
    Kernel > Domain. Engines never receive a clock; the calculation is a
    pure function of its inputs.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

SETTLEMENT_EPOCH = datetime(2025, 4, 1, 12, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of timezone-aware UTC datetimes."""

    @abstractmethod
    def now(self) -> datetime: ...

    def seconds_since(self, moment: datetime) -> float:
        """Elapsed seconds from ``moment`` to ``now()``."""
        return (self.now() - moment).total_seconds()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    Repeated ``now()`` calls return the same instant until ``advance()``
    moves it forward.
    """

    def __init__(self, start: datetime | None = None):
        start = start or SETTLEMENT_EPOCH
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start")
        self._current = start.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 1) -> datetime:
        self._current += timedelta(seconds=seconds)
        return self._current
