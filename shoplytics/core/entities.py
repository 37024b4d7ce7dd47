"""
Domain entities for storefront analytics.

- Event: raw behavioral event, the single source of truth
- AggregateBucket: one rollup row (definition + bucket key)
- Contribution: ledger row recording what one event added to one rollup

Timestamps are integer milliseconds since the Unix epoch (UTC).
"""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "Actor",
    "AggregateBucket",
    "BucketKey",
    "Contribution",
    "Event",
]

# (day,) or (day, dimension); day is YYYY-MM-DD in UTC.
BucketKey = tuple[str, ...]


def _new_event_id() -> str:
    return uuid4().hex


class Actor(BaseModel):
    """Who performed an event. Both ids may be absent for system events."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    anonymous_id: str | None = None

    @property
    def actor_id(self) -> str | None:
        return self.user_id or self.anonymous_id


class Event(BaseModel):
    """
    Raw analytics event.

    Immutable once stored, except for user_id which identity
    stitching may set exactly once.
    """

    id: str = Field(default_factory=_new_event_id)
    user_id: str | None = None
    anonymous_id: str | None = None
    name: str
    properties: dict[str, Any] = Field(default_factory=dict)
    timestamp: int  # epoch milliseconds, UTC

    @property
    def actor_id(self) -> str | None:
        """Authenticated id if present, otherwise the anonymous id."""
        return self.user_id or self.anonymous_id


class AggregateBucket(BaseModel):
    """Persisted accumulator for one (definition, key) pair."""

    definition: str
    day: str
    dimension: str | None = None
    accumulator: float = 0.0
    count: int = 0  # contributing events
    seq: int = 0  # first-seen order

    @property
    def key(self) -> BucketKey:
        if self.dimension is None:
            return (self.day,)
        return (self.day, self.dimension)


class Contribution(BaseModel):
    """What a single event added to a single rollup at ingestion time."""

    model_config = ConfigDict(frozen=True)

    definition: str
    event_id: str
    day: str
    dimension: str | None = None
    value: float = 0.0

    @property
    def key(self) -> BucketKey:
        if self.dimension is None:
            return (self.day,)
        return (self.day, self.dimension)
