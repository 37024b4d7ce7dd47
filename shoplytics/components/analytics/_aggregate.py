"""
Incremental rollup maintenance.

Ingestion applies one contribution per (definition, event); pruning
reverts exactly what was applied. The contribution ledger is the
idempotency witness: re-applying is a no-op, and reverting uses the
recorded key and value rather than re-deriving them, so identity
stitching (which changes actor_id) never misdirects a decrement.

Also provides InMemoryAnalyticsStore for dev/testing.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from shoplytics.core.entities import AggregateBucket, BucketKey, Contribution, Event
from shoplytics.core.ports.store import RemovalStatus

from ._definitions import DEFINITIONS, AggregateDefinition
from .ports import AnalyticsSessionPort

logger = logging.getLogger(__name__)


def split_key(key: BucketKey) -> tuple[str, str | None]:
    """(day,) -> (day, None); (day, dimension) -> (day, dimension)."""
    if len(key) == 1:
        return key[0], None
    if len(key) == 2:
        return key[0], key[1]
    raise ValueError(f"Bucket key must have one or two parts, got {key!r}")


def build_contribution(definition: AggregateDefinition, event: Event) -> Contribution | None:
    """Evaluate a definition against an event. None if it does not participate."""
    key = definition.key_fn(event)
    if key is None:
        return None
    day, dimension = split_key(key)
    return Contribution(
        definition=definition.name,
        event_id=event.id,
        day=day,
        dimension=dimension,
        value=definition.value_fn(event),
    )


def apply_contributions(
    session: AnalyticsSessionPort,
    event: Event,
    definitions: Iterable[AggregateDefinition] = DEFINITIONS,
) -> int:
    """Apply every participating definition once. Returns number newly applied."""
    applied = 0
    for definition in definitions:
        contribution = build_contribution(definition, event)
        if contribution is None:
            continue
        if session.add_contribution(contribution):
            applied += 1
    return applied


def revert_contributions(
    session: AnalyticsSessionPort,
    event: Event,
    definitions: Iterable[AggregateDefinition] = DEFINITIONS,
) -> int:
    """
    Revert every contribution the event made. Returns number reverted.

    A missing bucket is logged and skipped; pruning must keep going.
    """
    reverted = 0
    for definition in definitions:
        current_key = definition.key_fn(event)
        recorded = session.get_contribution(definition.name, event.id)
        if recorded is None:
            if current_key is not None:
                logger.warning(
                    "No contribution recorded for %s on event %s; nothing to revert",
                    definition.name,
                    event.id,
                )
            continue

        if current_key != recorded.key:
            logger.debug(
                "%s key for event %s changed from %s to %s after ingestion; reverting recorded key",
                definition.name,
                event.id,
                recorded.key,
                current_key,
            )

        status = session.remove_contribution(definition.name, event.id)
        if status == RemovalStatus.BUCKET_MISSING:
            logger.warning(
                "Bucket %s %s missing while reverting event %s; skipped",
                definition.name,
                recorded.key,
                event.id,
            )
            continue
        reverted += 1
    return reverted


@dataclass
class RollupTotal:
    accumulator: float = 0.0
    count: int = 0


def compute_rollups(
    events: Iterable[Event],
    definitions: Iterable[AggregateDefinition] = DEFINITIONS,
) -> dict[tuple[str, BucketKey], RollupTotal]:
    """Recompute every rollup from scratch. Used to verify the maintained buckets."""
    definitions = tuple(definitions)
    totals: dict[tuple[str, BucketKey], RollupTotal] = {}
    for event in events:
        for definition in definitions:
            key = definition.key_fn(event)
            if key is None:
                continue
            total = totals.setdefault((definition.name, key), RollupTotal())
            total.accumulator += definition.value_fn(event)
            total.count += 1
    return totals


def ledger_rollups(
    session: AnalyticsSessionPort,
    events: Iterable[Event],
    definitions: Iterable[AggregateDefinition] = DEFINITIONS,
) -> dict[tuple[str, BucketKey], RollupTotal]:
    """
    Rollups implied by the recorded contributions of the given events.

    Differs from compute_rollups only where stitching changed an event's
    actor after ingestion.
    """
    definitions = tuple(definitions)
    totals: dict[tuple[str, BucketKey], RollupTotal] = {}
    for event in events:
        for definition in definitions:
            contribution = session.get_contribution(definition.name, event.id)
            if contribution is None:
                continue
            total = totals.setdefault((definition.name, contribution.key), RollupTotal())
            total.accumulator += contribution.value
            total.count += 1
    return totals


def missing_contributions(
    session: AnalyticsSessionPort,
    events: Iterable[Event],
    definitions: Iterable[AggregateDefinition] = DEFINITIONS,
) -> list[tuple[str, str]]:
    """(definition, event_id) pairs that should have contributed but have no ledger row."""
    definitions = tuple(definitions)
    return [
        (definition.name, event.id)
        for event in events
        for definition in definitions
        if definition.key_fn(event) is not None
        and session.get_contribution(definition.name, event.id) is None
    ]


# --- In-Memory Store ---


@dataclass
class _StoreState:
    events: dict[str, Event] = field(default_factory=dict)
    buckets: dict[tuple[str, str, str | None], AggregateBucket] = field(default_factory=dict)
    contributions: dict[tuple[str, str], Contribution] = field(default_factory=dict)
    next_seq: int = 1


_MISSING = object()


class InMemoryAnalyticsSession:
    """
    Session over in-memory state. Callers hold the store lock.

    Write sessions get an undo journal: every mutation first records the
    previous value of the key it touches.
    """

    def __init__(self, state: _StoreState, journal: list[tuple[dict, Any, Any]] | None = None) -> None:
        self._state = state
        self._journal = journal

    def _remember(self, table: dict, key: Any) -> None:
        if self._journal is None:
            return
        previous = table.get(key, _MISSING)
        if isinstance(previous, AggregateBucket):
            # Buckets are updated in place.
            previous = previous.model_copy()
        self._journal.append((table, key, previous))

    # --- events ---

    def insert_event(self, event: Event) -> bool:
        if event.id in self._state.events:
            return False
        self._remember(self._state.events, event.id)
        self._state.events[event.id] = event.model_copy(deep=True)
        return True

    def get_event(self, event_id: str) -> Event | None:
        event = self._state.events.get(event_id)
        return event.model_copy(deep=True) if event else None

    def delete_event(self, event_id: str) -> None:
        self._remember(self._state.events, event_id)
        self._state.events.pop(event_id, None)

    def list_unlinked_event_ids(self, anonymous_id: str) -> list[str]:
        return [
            e.id
            for e in self._state.events.values()
            if e.anonymous_id == anonymous_id and e.user_id is None
        ]

    def set_user_id(self, event_ids: list[str], user_id: str) -> int:
        updated = 0
        for event_id in event_ids:
            event = self._state.events.get(event_id)
            if event is None:
                continue
            self._remember(self._state.events, event_id)
            self._state.events[event_id] = event.model_copy(update={"user_id": user_id})
            updated += 1
        return updated

    def list_events_before(self, cutoff_ms: int, limit: int) -> list[Event]:
        eligible = sorted(
            (e for e in self._state.events.values() if e.timestamp < cutoff_ms),
            key=lambda e: (e.timestamp, e.id),
        )
        return [e.model_copy(deep=True) for e in eligible[:limit]]

    def scan_events(
        self,
        start_ms: int,
        end_ms: int,
        names: Iterable[str] | None = None,
        authenticated_only: bool = False,
    ) -> list[Event]:
        wanted = set(names) if names is not None else None
        matched = [
            e
            for e in self._state.events.values()
            if start_ms <= e.timestamp < end_ms
            and (wanted is None or e.name in wanted)
            and (not authenticated_only or e.user_id is not None)
        ]
        matched.sort(key=lambda e: (e.timestamp, e.id))
        return [e.model_copy(deep=True) for e in matched]

    def count_events(self) -> int:
        return len(self._state.events)

    # --- ledger + buckets ---

    def add_contribution(self, contribution: Contribution) -> bool:
        ledger_key = (contribution.definition, contribution.event_id)
        if ledger_key in self._state.contributions:
            return False
        self._remember(self._state.contributions, ledger_key)
        self._state.contributions[ledger_key] = contribution

        bucket_key = (contribution.definition, contribution.day, contribution.dimension)
        self._remember(self._state.buckets, bucket_key)
        bucket = self._state.buckets.get(bucket_key)
        if bucket is None:
            bucket = AggregateBucket(
                definition=contribution.definition,
                day=contribution.day,
                dimension=contribution.dimension,
                seq=self._state.next_seq,
            )
            self._state.next_seq += 1
            self._state.buckets[bucket_key] = bucket
        bucket.accumulator += contribution.value
        bucket.count += 1
        return True

    def get_contribution(self, definition: str, event_id: str) -> Contribution | None:
        return self._state.contributions.get((definition, event_id))

    def remove_contribution(self, definition: str, event_id: str) -> RemovalStatus:
        ledger_key = (definition, event_id)
        contribution = self._state.contributions.get(ledger_key)
        if contribution is None:
            return RemovalStatus.NOT_FOUND
        self._remember(self._state.contributions, ledger_key)
        del self._state.contributions[ledger_key]

        bucket_key = (definition, contribution.day, contribution.dimension)
        bucket = self._state.buckets.get(bucket_key)
        if bucket is None:
            return RemovalStatus.BUCKET_MISSING

        self._remember(self._state.buckets, bucket_key)
        bucket.accumulator -= contribution.value
        bucket.count -= 1
        if bucket.count <= 0:
            del self._state.buckets[bucket_key]
            return RemovalStatus.BUCKET_DELETED
        return RemovalStatus.REMOVED

    def get_bucket(self, definition: str, key: BucketKey) -> AggregateBucket | None:
        day, dimension = split_key(key)
        bucket = self._state.buckets.get((definition, day, dimension))
        return bucket.model_copy() if bucket else None

    def scan_buckets(
        self,
        definition: str,
        start_day: str | None = None,
        end_day: str | None = None,
        dimension: str | None = None,
    ) -> list[AggregateBucket]:
        matched = [
            b
            for b in self._state.buckets.values()
            if b.definition == definition
            and (start_day is None or b.day >= start_day)
            and (end_day is None or b.day <= end_day)
            and (dimension is None or b.dimension == dimension)
        ]
        matched.sort(key=lambda b: (b.day, b.seq))
        return [b.model_copy() for b in matched]


class InMemoryAnalyticsStore:
    """
    In-memory analytics store for dev/testing.

    Writers are serialized by a lock. A transaction works on live state
    and replays its undo journal if the block raises.
    """

    def __init__(self) -> None:
        self._state = _StoreState()
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[InMemoryAnalyticsSession]:
        with self._lock:
            journal: list[tuple[dict, Any, Any]] = []
            next_seq = self._state.next_seq
            try:
                yield InMemoryAnalyticsSession(self._state, journal)
            except BaseException:
                for table, key, previous in reversed(journal):
                    if previous is _MISSING:
                        table.pop(key, None)
                    else:
                        table[key] = previous
                self._state.next_seq = next_seq
                raise

    @contextmanager
    def reader(self) -> Iterator[InMemoryAnalyticsSession]:
        with self._lock:
            yield InMemoryAnalyticsSession(self._state)
