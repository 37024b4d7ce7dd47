"""
Time provider interface.

All timestamps are UTC. Services take a TimePort so tests can pin "now".
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol


class TimePort(Protocol):
    """Time provider interface."""

    def now_utc(self) -> datetime:
        """Get current UTC time (timezone-aware)."""
        ...


def to_millis(dt: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    return int(dt.timestamp() * 1000)
