"""
Analytics component port definitions.
"""

from __future__ import annotations

from shoplytics.core.ports.store import (
    AnalyticsSessionPort,
    AnalyticsStoreError,
    AnalyticsStorePort,
    RemovalStatus,
)
from shoplytics.core.ports.time import TimePort

__all__ = [
    "AnalyticsSessionPort",
    "AnalyticsStoreError",
    "AnalyticsStorePort",
    "RemovalStatus",
    "TimePort",
]
