"""Time sources.

Every timestamp the engine records, and every ``ready_at`` comparison it
makes, goes through a :class:`Clock` so retry delays can be driven
deterministically in tests.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


class Clock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock(Clock):
    """A clock that only moves when told to.

    Usage::

        clock = ManualClock()
        engine = TaskEngine(clock=clock)
        ...
        clock.advance(5)  # five seconds later
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        """Move the clock forward by *seconds* and return the new time."""
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += timedelta(seconds=seconds)
        return self._now
