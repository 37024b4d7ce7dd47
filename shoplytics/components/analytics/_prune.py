"""
Retention pruner.

Deletes events older than the retention window, oldest first, in bounded
batches. Each batch is one transaction: contributions are reverted from
their buckets before the event row goes, so rollups stay equal to the
recorded contributions of the events that remain.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from shoplytics.core.ports.time import to_millis

from ._aggregate import revert_contributions
from ._definitions import DAY_MS, DEFINITIONS, AggregateDefinition
from ._impl import DefaultTimePort, IngestionError
from .ports import AnalyticsStorePort, TimePort

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100_000


@dataclass(frozen=True)
class RetentionConfig:
    """Retention window and batching."""

    days: int = 180
    batch_size: int = 500
    max_batches_per_run: int = 20


@dataclass(frozen=True)
class PruneResult:
    deleted: int
    has_more: bool


class RetentionPruner:
    """Batch deletion of aged events with rollup reversal."""

    def __init__(
        self,
        store: AnalyticsStorePort,
        time_port: TimePort | None = None,
        config: RetentionConfig | None = None,
        definitions: Iterable[AggregateDefinition] = DEFINITIONS,
    ) -> None:
        self._store = store
        self._time = time_port or DefaultTimePort()
        self._config = config or RetentionConfig()
        self._definitions = tuple(definitions)

    @property
    def config(self) -> RetentionConfig:
        return self._config

    def prune_older_than(
        self,
        retention_days: int | None = None,
        batch_size: int | None = None,
    ) -> tuple[PruneResult | None, list[IngestionError]]:
        """
        Run one batch.

        Returns ({deleted, has_more}, errors). has_more means eligible
        events remain and the caller should invoke again.
        """
        days = self._config.days if retention_days is None else retention_days
        limit = self._config.batch_size if batch_size is None else batch_size

        errors: list[IngestionError] = []
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            errors.append(
                IngestionError(
                    code="invalid_retention_days",
                    message="Retention days must be a positive integer",
                    field_name="retention_days",
                )
            )
        if (
            isinstance(limit, bool)
            or not isinstance(limit, int)
            or not 1 <= limit <= MAX_BATCH_SIZE
        ):
            errors.append(
                IngestionError(
                    code="invalid_batch_size",
                    message=f"Batch size must be between 1 and {MAX_BATCH_SIZE}",
                    field_name="batch_size",
                )
            )
        if errors:
            return None, errors

        # Clamped at the epoch; no stored event is older.
        cutoff_ms = max(to_millis(self._time.now_utc()) - days * DAY_MS, 0)

        with self._store.transaction() as session:
            # One extra row tells us whether another batch is needed.
            candidates = session.list_events_before(cutoff_ms, limit + 1)
            batch = candidates[:limit]
            for event in batch:
                revert_contributions(session, event, self._definitions)
                session.delete_event(event.id)

        has_more = len(candidates) > limit
        if batch:
            logger.info(
                "Pruned %d events older than %d days (has_more=%s)", len(batch), days, has_more
            )
        return PruneResult(deleted=len(batch), has_more=has_more), []

    def drain(
        self,
        retention_days: int | None = None,
        batch_size: int | None = None,
        max_batches: int | None = None,
    ) -> tuple[PruneResult | None, list[IngestionError]]:
        """Run batches until nothing eligible remains or max_batches is reached."""
        max_batches = max_batches or self._config.max_batches_per_run
        total = 0
        has_more = False
        for _ in range(max_batches):
            result, errors = self.prune_older_than(retention_days, batch_size)
            if errors:
                return None, errors
            assert result is not None
            total += result.deleted
            has_more = result.has_more
            if not has_more:
                break
        return PruneResult(deleted=total, has_more=has_more), []


def create_retention_pruner(
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    config: RetentionConfig | None = None,
) -> RetentionPruner:
    return RetentionPruner(store=store, time_port=time_port, config=config)
