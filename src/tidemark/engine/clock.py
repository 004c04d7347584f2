# src/tidemark/engine/clock.py
"""Clock abstraction for testable time interval resolution.

Time windows become eligible once wall-clock time passes their end plus
the pipeline's minimum delay. Production code uses SystemClock (the
default). Tests inject MockClock to control the current time.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Source of the current wall-clock time."""

    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    """Production clock using the system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class MockClock:
    """Controllable clock for deterministic testing.

    Example:
        clock = MockClock(datetime(2024, 1, 1, 1, 0, tzinfo=UTC))
        resolver = TimeIntervalResolver(clock=clock)

        clock.advance(timedelta(hours=1))
        windows = resolver.resolve(state)
    """

    def __init__(self, start: datetime) -> None:
        """Initialize mock clock at a given time.

        Args:
            start: Initial time; must be timezone-aware.

        Raises:
            ValueError: If start is naive.
        """
        if start.tzinfo is None:
            raise ValueError("MockClock requires a timezone-aware datetime")
        self._current = start

    def now(self) -> datetime:
        return self._current

    def advance(self, delta: timedelta) -> None:
        """Advance mock time.

        Raises:
            ValueError: If delta is negative.
        """
        if delta < timedelta(0):
            raise ValueError(f"Cannot advance time by negative amount: {delta}")
        self._current += delta

    def set(self, value: datetime) -> None:
        """Set mock time to an absolute value, including earlier times."""
        if value.tzinfo is None:
            raise ValueError("MockClock requires a timezone-aware datetime")
        self._current = value


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
