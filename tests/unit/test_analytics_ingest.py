"""
Tests for event ingestion and identity stitching.

Runs against both the in-memory and the SQLite store.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from shoplytics.components.analytics import (
    DEFINITIONS,
    AggregateDefinition,
    AnalyticsIngestionService,
    IngestionConfig,
    RetentionPruner,
    parse_timestamp,
)
from shoplytics.core.entities import Actor
from shoplytics.core.ports.time import to_millis

DAY = datetime(2024, 6, 15, 10, 0, tzinfo=UTC)


def get_bucket(store, definition: str, *key: str):
    with store.reader() as session:
        return session.get_bucket(definition, tuple(key))


def count_events(store) -> int:
    with store.reader() as session:
        return session.count_events()


@pytest.fixture
def service(store, time_port) -> AnalyticsIngestionService:
    return AnalyticsIngestionService(store=store, time_port=time_port)


# --- Validation ---


class TestValidation:
    """Invalid events are rejected without touching storage."""

    @pytest.mark.parametrize("name", [None, "", "   ", 42, ["page_viewed"]])
    def test_name_required(self, service, store, name) -> None:
        event, errors = service.ingest(Actor(anonymous_id="A1"), name)

        assert event is None
        assert [e.code for e in errors] == ["name_required"]
        assert count_events(store) == 0

    def test_name_too_long(self, store, time_port) -> None:
        service = AnalyticsIngestionService(
            store=store, time_port=time_port, config=IngestionConfig(max_name_length=8)
        )
        _, errors = service.ingest(None, "page_viewed")

        assert errors[0].code == "name_too_long"
        assert errors[0].field_name == "name"

    @pytest.mark.parametrize("properties", ["oops", 7, ["a", "b"]])
    def test_properties_must_be_mapping(self, service, properties) -> None:
        _, errors = service.ingest(None, "page_viewed", properties)
        assert [e.code for e in errors] == ["invalid_properties"]

    def test_properties_are_not_schema_checked(self, service) -> None:
        event, errors = service.ingest(None, "product_viewed", {"productId": 42, "nested": {"a": 1}})

        assert errors == []
        assert event is not None
        assert event.properties == {"productId": 42, "nested": {"a": 1}}

    @pytest.mark.parametrize(
        "timestamp",
        [
            "yesterday",
            True,
            -5,
            float("nan"),
            object(),
            1e16,
            253_402_300_800_000,
            "1969-12-31T23:59:59Z",
            datetime(9999, 12, 31, 23, 0, tzinfo=timezone(timedelta(hours=-5))),
        ],
    )
    def test_invalid_timestamp(self, service, timestamp) -> None:
        _, errors = service.ingest(None, "page_viewed", timestamp=timestamp)
        assert [e.code for e in errors] == ["invalid_timestamp"]

    def test_blank_event_id(self, service) -> None:
        _, errors = service.ingest(None, "page_viewed", event_id="  ")
        assert [e.code for e in errors] == ["invalid_event_id"]

    def test_errors_accumulate(self, service) -> None:
        _, errors = service.ingest(None, "", "oops", timestamp="never")
        assert {e.code for e in errors} == {"name_required", "invalid_properties", "invalid_timestamp"}


class TestTimestamps:
    def test_defaults_to_server_clock(self, service, time_port) -> None:
        event, _ = service.ingest(None, "page_viewed")
        assert event.timestamp == to_millis(time_port.now_utc())

    def test_accepts_iso_with_z(self) -> None:
        assert parse_timestamp("2024-06-15T10:00:00Z") == to_millis(DAY)

    def test_naive_datetime_is_utc(self) -> None:
        assert parse_timestamp(DAY.replace(tzinfo=None)) == to_millis(DAY)

    def test_float_millis_truncate(self) -> None:
        assert parse_timestamp(1718445600000.9) == 1718445600000

    def test_calendar_bounds(self) -> None:
        assert parse_timestamp(0) == 0
        assert parse_timestamp(253_402_300_799_999) == 253_402_300_799_999
        assert parse_timestamp(253_402_300_800_000) is None

    def test_out_of_range_leaves_store_untouched(self, service, store) -> None:
        event, errors = service.ingest(Actor(anonymous_id="A1"), "page_viewed", {}, 1e16)

        assert event is None
        assert [e.code for e in errors] == ["invalid_timestamp"]
        assert count_events(store) == 0

    def test_last_day_of_calendar(self, service, store) -> None:
        event, errors = service.ingest(None, "page_viewed", timestamp=253_402_300_799_999)

        assert errors == []
        assert get_bucket(store, "dailyViews", "9999-12-31").count == 1


# --- Rollups ---


class TestRollupMaintenance:
    """Every participating definition gets exactly one contribution."""

    def test_page_view_updates_views_and_actives(self, service, store) -> None:
        service.ingest(Actor(anonymous_id="A1"), "page_viewed", timestamp=DAY)

        views = get_bucket(store, "dailyViews", "2024-06-15")
        actives = get_bucket(store, "activeUsers", "2024-06-15", "A1")
        assert views.accumulator == 1 and views.count == 1
        assert actives.count == 1

    def test_order_updates_sales_and_funnel(self, service, store) -> None:
        service.ingest(Actor(user_id="U1"), "order_completed", {"total": 150}, timestamp=DAY)
        service.ingest(Actor(user_id="U2"), "order_completed", {"total": 50.5}, timestamp=DAY)

        sales = get_bucket(store, "sales", "2024-06-15")
        funnel = get_bucket(store, "checkoutFunnel", "2024-06-15", "completed")
        assert sales.accumulator == pytest.approx(200.5)
        assert sales.count == 2
        assert funnel.count == 2

    def test_non_participating_event_still_stored(self, service, store) -> None:
        event, errors = service.ingest(None, "newsletter_signup", {"list": "weekly"}, timestamp=DAY)

        assert errors == []
        assert count_events(store) == 1
        with store.reader() as session:
            assert session.get_event(event.id).name == "newsletter_signup"
            for definition in DEFINITIONS:
                assert session.scan_buckets(definition.name) == []

    def test_malformed_property_skips_only_that_rollup(self, service, store) -> None:
        service.ingest(Actor(anonymous_id="A1"), "product_viewed", {"productId": None}, timestamp=DAY)

        with store.reader() as session:
            assert session.scan_buckets("productViews") == []
        assert get_bucket(store, "activeUsers", "2024-06-15", "A1").count == 1

    def test_ids_are_trimmed(self, service, store) -> None:
        event, _ = service.ingest(Actor(user_id=" U1 ", anonymous_id="  "), "page_viewed", timestamp=DAY)

        assert event.user_id == "U1"
        assert event.anonymous_id is None
        assert get_bucket(store, "activeUsers", "2024-06-15", "U1") is not None


class TestIdempotency:
    def test_reingest_same_id_does_not_double_count(self, service, store) -> None:
        first, _ = service.ingest(None, "page_viewed", timestamp=DAY, event_id="evt-1")
        second, errors = service.ingest(None, "page_viewed", timestamp=DAY, event_id="evt-1")

        assert errors == []
        assert second.id == first.id
        assert count_events(store) == 1
        assert get_bucket(store, "dailyViews", "2024-06-15").count == 1

    def test_reingest_keeps_stored_payload(self, service, store) -> None:
        service.ingest(None, "order_completed", {"total": 10}, timestamp=DAY, event_id="evt-1")
        service.ingest(None, "order_completed", {"total": 999}, timestamp=DAY, event_id="evt-1")

        assert get_bucket(store, "sales", "2024-06-15").accumulator == pytest.approx(10)

    def test_reingest_completes_missing_contributions(self, store, time_port) -> None:
        """A definition added later picks up the stored event on replay."""
        views_only = [d for d in DEFINITIONS if d.name == "dailyViews"]
        AnalyticsIngestionService(store, time_port, definitions=views_only).ingest(
            Actor(anonymous_id="A1"), "page_viewed", timestamp=DAY, event_id="evt-1"
        )
        assert get_bucket(store, "activeUsers", "2024-06-15", "A1") is None

        AnalyticsIngestionService(store, time_port).ingest(
            Actor(anonymous_id="A1"), "page_viewed", timestamp=DAY, event_id="evt-1"
        )
        assert get_bucket(store, "dailyViews", "2024-06-15").count == 1
        assert get_bucket(store, "activeUsers", "2024-06-15", "A1").count == 1


class TestAtomicity:
    """A failure mid-way leaves neither the event nor any contribution."""

    def test_failing_definition_rolls_back_everything(self, store, time_port) -> None:
        def explode(event):
            raise RuntimeError("boom")

        broken = AggregateDefinition("broken", explode, lambda e: 1.0)
        service = AnalyticsIngestionService(
            store=store, time_port=time_port, definitions=(*DEFINITIONS, broken)
        )

        with pytest.raises(RuntimeError):
            service.ingest(Actor(anonymous_id="A1"), "page_viewed", timestamp=DAY)

        assert count_events(store) == 0
        assert get_bucket(store, "dailyViews", "2024-06-15") is None
        assert get_bucket(store, "activeUsers", "2024-06-15", "A1") is None

    def test_rollback_restores_existing_buckets(self, service, store, time_port) -> None:
        service.ingest(Actor(anonymous_id="A1"), "order_completed", {"total": 10}, timestamp=DAY)

        def explode(event):
            raise RuntimeError("boom")

        broken = AnalyticsIngestionService(
            store,
            time_port,
            definitions=(*DEFINITIONS, AggregateDefinition("broken", explode, lambda e: 1.0)),
        )
        with pytest.raises(RuntimeError):
            broken.ingest(Actor(anonymous_id="A1"), "order_completed", {"total": 99}, timestamp=DAY)

        sales = get_bucket(store, "sales", "2024-06-15")
        assert (sales.accumulator, sales.count) == (10.0, 1)
        assert get_bucket(store, "activeUsers", "2024-06-15", "A1").count == 1
        assert count_events(store) == 1

    def test_failed_prune_batch_restores_everything(self, service, store, time_port) -> None:
        old = DAY - timedelta(days=200)
        first, _ = service.ingest(Actor(anonymous_id="A1"), "page_viewed", timestamp=old)
        service.ingest(Actor(anonymous_id="A2"), "product_viewed", {"productId": "P1"}, timestamp=old)

        def explode(event):
            raise RuntimeError("boom")

        pruner = RetentionPruner(
            store,
            time_port,
            definitions=(*DEFINITIONS, AggregateDefinition("broken", explode, lambda e: 1.0)),
        )
        with pytest.raises(RuntimeError):
            pruner.prune_older_than(180, 10)

        day = old.strftime("%Y-%m-%d")
        assert count_events(store) == 2
        assert get_bucket(store, "dailyViews", day).count == 1
        assert get_bucket(store, "productViews", day, "P1").count == 1
        with store.reader() as session:
            assert session.get_contribution("dailyViews", first.id) is not None

    def test_store_usable_after_rollback(self, store, time_port) -> None:
        def explode(event):
            raise RuntimeError("boom")

        broken = AnalyticsIngestionService(
            store, time_port, definitions=(AggregateDefinition("broken", explode, lambda e: 1.0),)
        )
        with pytest.raises(RuntimeError):
            broken.ingest(None, "page_viewed", timestamp=DAY)

        AnalyticsIngestionService(store, time_port).ingest(None, "page_viewed", timestamp=DAY)
        assert get_bucket(store, "dailyViews", "2024-06-15").count == 1


# --- Identity stitching ---


class TestLinkIdentity:
    def test_links_only_unlinked_anonymous_events(self, service, store) -> None:
        service.ingest(Actor(anonymous_id="A1"), "page_viewed", timestamp=DAY)
        service.ingest(Actor(anonymous_id="A1"), "product_viewed", {"productId": "P1"}, timestamp=DAY)
        service.ingest(Actor(user_id="U9", anonymous_id="A1"), "page_viewed", timestamp=DAY)
        service.ingest(Actor(anonymous_id="A2"), "page_viewed", timestamp=DAY)

        linked, errors = service.link_identity("A1", "U1")

        assert errors == []
        assert linked == 2
        with store.reader() as session:
            users = sorted(
                (e.anonymous_id, e.user_id) for e in session.scan_events(0, 2**62)
            )
        assert users == [("A1", "U1"), ("A1", "U1"), ("A1", "U9"), ("A2", None)]

    def test_second_link_is_noop(self, service) -> None:
        service.ingest(Actor(anonymous_id="A1"), "page_viewed", timestamp=DAY)
        service.link_identity("A1", "U1")

        linked, _ = service.link_identity("A1", "U2")
        assert linked == 0

    def test_no_user_links_nothing(self, service) -> None:
        service.ingest(Actor(anonymous_id="A1"), "page_viewed", timestamp=DAY)
        assert service.link_identity("A1", None) == (0, [])
        assert service.link_identity("A1", "   ") == (0, [])

    @pytest.mark.parametrize("anonymous_id", [None, "", "  ", 5])
    def test_anonymous_id_required(self, service, anonymous_id) -> None:
        linked, errors = service.link_identity(anonymous_id, "U1")
        assert linked == 0
        assert [e.code for e in errors] == ["anonymous_id_required"]

    def test_rollups_keep_pre_link_attribution(self, service, store) -> None:
        service.ingest(Actor(anonymous_id="A1"), "page_viewed", timestamp=DAY)
        service.link_identity("A1", "U1")

        assert get_bucket(store, "activeUsers", "2024-06-15", "A1").count == 1
        assert get_bucket(store, "activeUsers", "2024-06-15", "U1") is None

    def test_prune_after_link_reverts_original_bucket(self, service, store, time_port) -> None:
        """Stitching moves actor_id; pruning must still decrement the anonymous bucket."""
        old = time_port.now_utc() - timedelta(days=200)
        service.ingest(Actor(anonymous_id="A1"), "product_viewed", {"productId": "P1"}, timestamp=old)
        service.link_identity("A1", "U1")

        pruner = RetentionPruner(store=store, time_port=time_port)
        result, errors = pruner.prune_older_than(180, 10)

        assert errors == []
        assert result.deleted == 1
        day = old.strftime("%Y-%m-%d")
        assert get_bucket(store, "activeUsers", day, "A1") is None
        assert get_bucket(store, "activeUsers", day, "U1") is None
        assert get_bucket(store, "productViews", day, "P1") is None
        assert count_events(store) == 0
