"""
Injected time source for migration jobs.

Every timestamp a job persists (phase transitions, checkpoints, error
records, the reconciliation report) comes from a Clock handed to the
component that records it.  This module is the only place allowed to read
the wall clock; ``tests/architecture`` enforces that.

SQLite drops tzinfo on the way back from the database, so stores compare
timestamps through ``now_utc()`` values, never through local offsets.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_EPOCH = datetime(2026, 1, 5, 7, 30, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of timezone-aware timestamps."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def now_utc(self) -> datetime:
        return self.now().astimezone(timezone.utc)


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Frozen clock for tests and dry runs.

    Time only moves when a test moves it, so checkpoint ``recorded_at``
    values and report ``generated_at`` are reproducible.  Worker threads may
    read it while a test advances it.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._lock = threading.Lock()
        self._base = fixed_time or DEFAULT_TEST_EPOCH
        self._offset = timedelta(0)

    def now(self) -> datetime:
        with self._lock:
            return self._base + self._offset

    def set_time(self, time: datetime) -> None:
        with self._lock:
            self._base = time
            self._offset = timedelta(0)

    def advance(self, seconds: float = 1) -> None:
        with self._lock:
            self._offset += timedelta(seconds=seconds)

    def tick(self) -> datetime:
        """Move forward one second and return the new time."""
        self.advance(1)
        return self.now()
