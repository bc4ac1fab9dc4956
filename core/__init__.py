"""
Core Module Package.

Infrastructure shared by the settlement packages.

Components:
- clock: Unified time abstraction
"""

from .clock import ClockProtocol, SystemClock, MockClock, ensure_utc, epoch_seconds
