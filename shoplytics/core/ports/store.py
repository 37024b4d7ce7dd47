"""
Analytics store interface.

One port covers the event store, the aggregate buckets and the
contribution ledger, because every write has to touch all three
inside a single transaction.

Key requirements:
- transaction() commits on normal exit and rolls back on any exception
- add_contribution is conditional: a (definition, event) pair is applied at most once
- bucket increments are atomic adds, never read-modify-write
- storage failures surface as AnalyticsStoreError (retryable)
"""

from __future__ import annotations

from collections.abc import Iterable
from contextlib import AbstractContextManager
from enum import Enum
from typing import Protocol

from shoplytics.core.entities import AggregateBucket, BucketKey, Contribution, Event


class AnalyticsStoreError(RuntimeError):
    """Transient storage failure. The operation had no effect and may be retried."""


class RemovalStatus(str, Enum):
    """Outcome of reverting one ledger row."""

    REMOVED = "removed"
    BUCKET_DELETED = "bucket_deleted"  # count reached zero
    BUCKET_MISSING = "bucket_missing"  # ledger row had no bucket to decrement
    NOT_FOUND = "not_found"  # no ledger row for this (definition, event)


class AnalyticsSessionPort(Protocol):
    """Operations available inside a transaction (or a read-only session)."""

    # --- events ---

    def insert_event(self, event: Event) -> bool:
        """Insert event. Returns False if an event with the same id exists."""
        ...

    def get_event(self, event_id: str) -> Event | None: ...

    def delete_event(self, event_id: str) -> None: ...

    def list_unlinked_event_ids(self, anonymous_id: str) -> list[str]:
        """Ids of events with this anonymous_id and no user_id."""
        ...

    def set_user_id(self, event_ids: list[str], user_id: str) -> int:
        """Set user_id on the given events. Returns number updated."""
        ...

    def list_events_before(self, cutoff_ms: int, limit: int) -> list[Event]:
        """Events with timestamp < cutoff_ms, oldest first."""
        ...

    def scan_events(
        self,
        start_ms: int,
        end_ms: int,
        names: Iterable[str] | None = None,
        authenticated_only: bool = False,
    ) -> list[Event]:
        """Events with start_ms <= timestamp < end_ms, ordered by timestamp."""
        ...

    def count_events(self) -> int: ...

    # --- ledger + buckets ---

    def add_contribution(self, contribution: Contribution) -> bool:
        """
        Record the contribution and add it to its bucket.

        No-op returning False when the (definition, event_id) pair
        already contributed.
        """
        ...

    def get_contribution(self, definition: str, event_id: str) -> Contribution | None: ...

    def remove_contribution(self, definition: str, event_id: str) -> RemovalStatus:
        """Revert a ledger row from its bucket and delete the row."""
        ...

    def get_bucket(self, definition: str, key: BucketKey) -> AggregateBucket | None: ...

    def scan_buckets(
        self,
        definition: str,
        start_day: str | None = None,
        end_day: str | None = None,
        dimension: str | None = None,
    ) -> list[AggregateBucket]:
        """Buckets with start_day <= day <= end_day, ordered by (day, seq)."""
        ...


class AnalyticsStorePort(Protocol):
    """Transactional analytics storage."""

    def transaction(self) -> AbstractContextManager[AnalyticsSessionPort]:
        """Open a write transaction."""
        ...

    def reader(self) -> AbstractContextManager[AnalyticsSessionPort]:
        """Open a read-only session over a consistent snapshot."""
        ...
