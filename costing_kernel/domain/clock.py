"""
Injectable time source.

Ledger services stamp created_at, voided_at, reversal rows and backfill
runs from a Clock rather than ``datetime.now()``, so a test can pin the
business day a reversal lands on.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta


class Clock(ABC):
    """Source of timezone-aware UTC timestamps."""

    @abstractmethod
    def now(self) -> datetime: ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(UTC)


class DeterministicClock(Clock):
    """
    Frozen clock for tests.

    ``now()`` keeps returning the same instant until ``advance()`` moves it
    forward or ``set_time()`` jumps to another one.
    """

    def __init__(self, start: datetime | None = None):
        if start is not None and start.tzinfo is None:
            raise ValueError(f"DeterministicClock needs an aware datetime, got {start!r}")
        self._current = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self._current

    def set_time(self, when: datetime) -> None:
        self._current = when

    def advance(self, seconds: float = 0, *, days: int = 0, hours: int = 0) -> datetime:
        """Move forward and return the new instant."""
        self._current += timedelta(days=days, hours=hours, seconds=seconds)
        return self._current
