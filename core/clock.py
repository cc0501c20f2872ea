"""
Core Module - Clock.

============================================================
RESPONSIBILITY
============================================================
Injectable UTC time source for the control plane.

- Lifecycle, queue and audit services read time from it
- Backoff, lease expiry and staleness ages are deterministic in tests
- NAV sampling ticks are truncated to whole minutes

Naive datetimes (SQLite drops offsets) are always read as UTC.

============================================================
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def truncate_to_minute(dt: datetime) -> datetime:
    """Snap a timestamp to its NAV sampling tick."""
    return ensure_utc(dt).replace(second=0, microsecond=0)


# ============================================================
# CLOCKS
# ============================================================

class ClockProtocol(ABC):
    """Time source used by every service."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""


class SystemClock(ClockProtocol):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class MockClock(ClockProtocol):
    """
    Manually driven clock for tests.

    Shared safely between the threads of a concurrency test; time
    only moves on advance().
    """

    def __init__(self, start: Optional[datetime] = None):
        self._current = ensure_utc(start or datetime(2026, 1, 1, tzinfo=timezone.utc))
        self._mutex = threading.Lock()

    def now(self) -> datetime:
        with self._mutex:
            return self._current

    def advance(self, seconds: float = 0, **delta) -> None:
        """Move forward by ``seconds`` plus any timedelta keywords (minutes=, days=...)."""
        with self._mutex:
            self._current += timedelta(seconds=seconds, **delta)


class ClockFactory:
    """Process-wide default clock for services built without one."""

    _default: Optional[ClockProtocol] = None
    _mutex = threading.Lock()

    @classmethod
    def get_clock(cls) -> ClockProtocol:
        with cls._mutex:
            if cls._default is None:
                cls._default = SystemClock()
            return cls._default


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ClockFactory",
    "ensure_utc",
    "truncate_to_minute",
]
