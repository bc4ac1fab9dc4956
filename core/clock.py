"""
Core Module - Settlement Clock.

============================================================
RESPONSIBILITY
============================================================
Single time source for the settlement core.

- Trade deadlines, sweep cut-offs and event timestamps all
  read time through a ClockProtocol instance
- Sweeps and tests inject MockClock to move time forward
  without sleeping

============================================================
DESIGN PRINCIPLES
============================================================
- UTC only, always timezone-aware
- Injected, never looked up globally
- Thread-safe

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import threading


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the settlement clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    def timestamp(self) -> int:
        """Get current time as integer epoch seconds."""
        return epoch_seconds(self.now())

    def ago(self, delta: timedelta) -> datetime:
        """Return the instant `delta` before now."""
        return self.now() - delta


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """Wall clock, always UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Manually driven clock.

    Sweeps compare deadlines against now(); advancing this clock
    is how tests age trades past their timeouts.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        self._time = ensure_utc(initial_time or datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def set_time(self, new_time: datetime) -> None:
        """Jump to an absolute time."""
        with self._lock:
            self._time = ensure_utc(new_time)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (minutes, hours, days, ...)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)


# ============================================================
# TIMESTAMP UTILITIES
# ============================================================

def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def epoch_seconds(dt: Optional[datetime]) -> Optional[int]:
    """Integer epoch seconds, or None when dt is None."""
    if dt is None:
        return None
    return int(ensure_utc(dt).timestamp())


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "epoch_seconds",
]
