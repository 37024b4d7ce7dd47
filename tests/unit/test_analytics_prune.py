"""
Tests for the retention pruner.
"""

from __future__ import annotations

import logging
from datetime import timedelta

import pytest

from shoplytics.components.analytics import (
    DEFINITIONS,
    AnalyticsIngestionService,
    RetentionConfig,
    RetentionPruner,
    compute_rollups,
)
from shoplytics.core.entities import Actor


def snapshot_buckets(store) -> dict:
    with store.reader() as session:
        return {
            (b.definition, b.key): (round(b.accumulator, 6), b.count)
            for d in DEFINITIONS
            for b in session.scan_buckets(d.name)
        }


def recomputed(store) -> dict:
    with store.reader() as session:
        events = session.scan_events(0, 2**62)
    return {k: (round(v.accumulator, 6), v.count) for k, v in compute_rollups(events).items()}


@pytest.fixture
def ingest(store, time_port):
    service = AnalyticsIngestionService(store=store, time_port=time_port)

    def _ingest(days_ago: float, name: str = "page_viewed", properties=None, actor=None):
        ts = time_port.now_utc() - timedelta(days=days_ago)
        event, errors = service.ingest(actor or Actor(anonymous_id="A1"), name, properties, ts)
        assert errors == []
        return event

    return _ingest


@pytest.fixture
def pruner(store, time_port) -> RetentionPruner:
    return RetentionPruner(store=store, time_port=time_port)


class TestPruneBatches:
    def test_nothing_to_prune(self, pruner, ingest) -> None:
        ingest(1)
        result, errors = pruner.prune_older_than(180, 10)

        assert errors == []
        assert result.deleted == 0
        assert result.has_more is False

    def test_batches_report_has_more(self, pruner, ingest, store) -> None:
        """Five aged events, batch size two: 2/2/1 with has_more true, true, false."""
        for i in range(5):
            ingest(200 + i)
        ingest(10)

        outcomes = []
        for _ in range(3):
            result, _ = pruner.prune_older_than(180, 2)
            outcomes.append((result.deleted, result.has_more))

        assert outcomes == [(2, True), (2, True), (1, False)]
        with store.reader() as session:
            assert session.count_events() == 1

    def test_exact_batch_boundary_has_no_more(self, pruner, ingest) -> None:
        ingest(200)
        ingest(201)
        result, _ = pruner.prune_older_than(180, 2)
        assert (result.deleted, result.has_more) == (2, False)

    def test_oldest_pruned_first(self, pruner, ingest, store) -> None:
        oldest = ingest(300)
        ingest(200)

        pruner.prune_older_than(180, 1)

        with store.reader() as session:
            assert session.get_event(oldest.id) is None
            assert session.count_events() == 1

    def test_event_exactly_at_cutoff_is_kept(self, pruner, ingest, store) -> None:
        ingest(180)
        result, _ = pruner.prune_older_than(180, 10)
        assert result.deleted == 0

    def test_defaults_come_from_config(self, store, time_port, ingest) -> None:
        ingest(40)
        ingest(5)
        pruner = RetentionPruner(
            store=store, time_port=time_port, config=RetentionConfig(days=30, batch_size=1)
        )
        result, _ = pruner.prune_older_than()
        assert (result.deleted, result.has_more) == (1, False)

    def test_default_retention_is_180_days(self) -> None:
        assert RetentionConfig().days == 180


class TestPruneValidation:
    @pytest.mark.parametrize("days", [0, -1, True, 1.5])
    def test_invalid_retention_days(self, pruner, days) -> None:
        result, errors = pruner.prune_older_than(days, 10)
        assert result is None
        assert [e.code for e in errors] == ["invalid_retention_days"]

    @pytest.mark.parametrize("batch_size", [0, -3, False, 100_001, 2**64])
    def test_invalid_batch_size(self, pruner, batch_size) -> None:
        result, errors = pruner.prune_older_than(30, batch_size)
        assert result is None
        assert [e.code for e in errors] == ["invalid_batch_size"]

    @pytest.mark.parametrize("days", [1_000_000_000, 10**20])
    def test_window_past_the_epoch_keeps_everything(self, pruner, ingest, store, days) -> None:
        ingest(400)
        result, errors = pruner.prune_older_than(days, 10)

        assert errors == []
        assert (result.deleted, result.has_more) == (0, False)
        with store.reader() as session:
            assert session.count_events() == 1


class TestPruneRollups:
    """Rollups after pruning equal a recomputation over surviving events."""

    def test_contributions_reverted(self, pruner, ingest, store) -> None:
        ingest(200, "order_completed", {"total": 100}, Actor(user_id="U1"))
        ingest(200, "order_completed", {"total": 40}, Actor(user_id="U2"))
        ingest(200, "coupon_applied", {"couponCode": "X", "success": True, "discountAmount": 5})
        ingest(2, "order_completed", {"total": 60}, Actor(user_id="U1"))

        pruner.prune_older_than(180, 1)

        assert snapshot_buckets(store) == recomputed(store)

        pruner.prune_older_than(180, 10)
        assert snapshot_buckets(store) == recomputed(store)

    def test_emptied_buckets_are_deleted(self, pruner, ingest, store) -> None:
        ingest(200, "product_viewed", {"productId": "P1"})
        pruner.prune_older_than(180, 10)

        with store.reader() as session:
            assert session.scan_buckets("productViews") == []
            assert session.scan_buckets("activeUsers") == []

    def test_missing_bucket_is_logged_and_skipped(self, memory_store, time_port, caplog) -> None:
        service = AnalyticsIngestionService(store=memory_store, time_port=time_port)
        old = time_port.now_utc() - timedelta(days=200)
        event, _ = service.ingest(Actor(anonymous_id="A1"), "page_viewed", timestamp=old)

        # Drop the bucket rows but keep the ledger.
        memory_store._state.buckets.clear()

        with caplog.at_level(logging.WARNING):
            result, errors = RetentionPruner(memory_store, time_port).prune_older_than(180, 10)

        assert errors == []
        assert result.deleted == 1
        assert "missing" in caplog.text
        with memory_store.reader() as session:
            assert session.count_events() == 0
            assert session.get_contribution("dailyViews", event.id) is None
            assert session.get_contribution("activeUsers", event.id) is None


class TestDrain:
    def test_drain_runs_until_empty(self, pruner, ingest, store) -> None:
        for i in range(7):
            ingest(190 + i)

        result, errors = pruner.drain(180, 2)

        assert errors == []
        assert result.deleted == 7
        assert result.has_more is False

    def test_drain_respects_max_batches(self, pruner, ingest) -> None:
        for i in range(7):
            ingest(190 + i)

        result, _ = pruner.drain(180, 2, max_batches=2)
        assert result.deleted == 4
        assert result.has_more is True

    def test_drain_propagates_validation_errors(self, pruner) -> None:
        result, errors = pruner.drain(0, 10)
        assert result is None
        assert errors[0].code == "invalid_retention_days"
