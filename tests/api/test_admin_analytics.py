"""
Tests for the Admin Analytics API.

Dashboard queries return aggregated data for the fixed clock
(2024-06-15 14:30 UTC); storage failures surface as 503.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from shoplytics.api.deps import get_analytics_rules, get_store, get_time_port
from shoplytics.api.routes import admin_analytics
from shoplytics.components.analytics import (
    AnalyticsIngestionService,
    AnalyticsStoreError,
    InMemoryAnalyticsStore,
)
from shoplytics.core.entities import Actor
from shoplytics.rules.models import AnalyticsRules

# --- Test Setup ---


class BrokenStore(InMemoryAnalyticsStore):
    def reader(self):
        raise AnalyticsStoreError("database disk image is malformed")

    def transaction(self):
        raise AnalyticsStoreError("database disk image is malformed")


@pytest.fixture
def store() -> InMemoryAnalyticsStore:
    return InMemoryAnalyticsStore()


def build_app(store, time_port) -> FastAPI:
    app = FastAPI()
    app.include_router(admin_analytics.router, prefix="/analytics")
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_time_port] = lambda: time_port
    app.dependency_overrides[get_analytics_rules] = lambda: AnalyticsRules()
    return app


@pytest.fixture
def client(store, time_port) -> TestClient:
    return TestClient(build_app(store, time_port))


@pytest.fixture
def record(store, time_port):
    service = AnalyticsIngestionService(store=store, time_port=time_port)

    def _record(name, properties=None, anonymous_id="A1", user_id=None, days_ago=0, count=1):
        ts = time_port.now_utc() - timedelta(days=days_ago)
        for _ in range(count):
            service.ingest(Actor(user_id=user_id, anonymous_id=anonymous_id), name, properties, ts)

    return _record


# --- Dashboard queries ---


class TestSummary:
    def test_empty_store_is_zeros(self, client) -> None:
        response = client.get("/analytics/summary")

        assert response.status_code == 200
        data = response.json()
        assert data["views_today"] == {"current": 0, "previous": 0, "change": 0}
        assert data["total_views"] == 0
        assert data["top_products"] == []

    def test_counts(self, client, record) -> None:
        record("page_viewed", count=3)
        record("page_viewed", anonymous_id="A2", days_ago=1)
        record("product_viewed", {"productId": "P1"}, user_id="U1")

        data = client.get("/analytics/summary").json()

        assert data["views_today"]["current"] == 3
        assert data["views_today"]["previous"] == 1
        assert data["views_today"]["change"] == 200.0
        assert data["dau"]["current"] == 1
        assert data["top_products"][0]["key"] == "P1"


class TestSeries:
    def test_daily_views(self, client, record) -> None:
        record("page_viewed", count=2)

        data = client.get("/analytics/series/views", params={"limit": 7}).json()

        assert data["interval"] == "daily"
        assert len(data["points"]) == 7
        assert data["points"][-1]["bucket_key"] == "2024-06-15"
        assert data["points"][-1]["value"] == 2

    def test_sales_include_orders(self, client, record) -> None:
        record("order_completed", {"total": 25}, count=2)

        data = client.get("/analytics/series/sales", params={"interval": "monthly", "limit": 1}).json()

        assert data["points"] == [
            {"label": "Jun 2024", "bucket_key": "2024-06", "value": 50.0, "orders": 2}
        ]

    def test_bad_metric_is_400(self, client) -> None:
        response = client.get("/analytics/series/bounces")
        assert response.status_code == 400
        assert response.json()["detail"]["errors"][0]["code"] == "invalid_metric"

    def test_bad_interval_is_400(self, client) -> None:
        response = client.get("/analytics/series/views", params={"interval": "hourly"})
        assert response.status_code == 400
        assert response.json()["detail"]["errors"][0]["code"] == "invalid_interval"


class TestFunnelAndTop:
    def test_checkout_funnel(self, client, record) -> None:
        record("checkout_started", anonymous_id="A1")
        record("checkout_started", anonymous_id="A2")
        record("checkout_step_viewed", {"step": "shipping"}, anonymous_id="A1")

        data = client.get("/analytics/funnel/checkout").json()

        assert [s["count"] for s in data["steps"]] == [2, 1, 0, 0]
        assert data["steps"][1]["drop_off"] == 50.0
        assert data["total_conversion"] == 0.0

    def test_funnel_days_validated(self, client) -> None:
        assert client.get("/analytics/funnel/checkout", params={"days": 0}).status_code == 422

    @pytest.mark.parametrize(
        "dimension,name,properties,key",
        [
            ("products", "product_viewed", {"productId": "P1"}, "P1"),
            ("categories", "category_viewed", {"categoryId": "shoes"}, "shoes"),
            ("searches", "search_performed", {"query": "Tote"}, "tote"),
            (
                "coupons",
                "coupon_applied",
                {"couponCode": "X", "success": True, "discountAmount": 5},
                "X",
            ),
        ],
    )
    def test_top_dimensions(self, client, record, dimension, name, properties, key) -> None:
        record(name, properties)

        data = client.get(f"/analytics/top/{dimension}", params={"days": 1}).json()

        assert [i["key"] for i in data["items"]] == [key]

    @pytest.mark.parametrize(
        "path", ["/analytics/top/products", "/analytics/coupons", "/analytics/searches"]
    )
    def test_huge_window_reads_all_history(self, client, record, path) -> None:
        record("product_viewed", {"productId": "P1"}, days_ago=400)

        response = client.get(path, params={"days": 100_000_000})

        assert response.status_code == 200
        if path.endswith("products"):
            assert [i["key"] for i in response.json()["items"]] == ["P1"]

    def test_huge_funnel_window(self, client, record) -> None:
        record("checkout_started", days_ago=400)

        response = client.get("/analytics/funnel/checkout", params={"days": 10**12})

        assert response.status_code == 200
        assert response.json()["steps"][0]["count"] == 1

    def test_unknown_dimension_is_400(self, client) -> None:
        response = client.get("/analytics/top/referrers")
        assert response.status_code == 400
        assert response.json()["detail"]["errors"][0]["code"] == "invalid_dimension"


class TestMetrics:
    def test_conversion(self, client, record) -> None:
        record("product_viewed", {"productId": "P1"}, count=4)
        record("cart_item_added", {"productId": "P1"})

        data = client.get("/analytics/conversion").json()

        assert data["product_to_cart_rate"] == 25.0
        assert data["product_views_today"] == 4

    def test_cart(self, client, record) -> None:
        record("checkout_started", count=2)
        record("order_completed", {"total": 40})

        data = client.get("/analytics/cart").json()

        assert data["abandoned_checkouts_today"] == 1
        assert data["average_order_value_today"] == 40.0

    def test_coupons_and_searches(self, client, record) -> None:
        record("coupon_applied", {"couponCode": "X", "success": True, "discountAmount": 5}, count=2)
        record("search_performed", {"query": "shoes"})

        coupons = client.get("/analytics/coupons").json()
        searches = client.get("/analytics/searches").json()

        assert coupons["total_uses"] == 2
        assert coupons["total_discount"] == 10.0
        assert searches["total_searches"] == 1

    def test_retention(self, client, record) -> None:
        record("page_viewed", user_id="U1", days_ago=10)
        record("page_viewed", user_id="U1")

        data = client.get("/analytics/retention").json()

        assert data == {"active_users": 1, "day1": 100, "day7": 100, "day30": 0}


# --- Retention trigger ---


class TestPrune:
    def test_prune_batches(self, client, record, store) -> None:
        record("page_viewed", days_ago=200, count=3)

        first = client.post("/analytics/prune", params={"batch_size": 2}).json()
        second = client.post("/analytics/prune", params={"batch_size": 2}).json()

        assert first == {"deleted": 2, "has_more": True}
        assert second == {"deleted": 1, "has_more": False}
        with store.reader() as session:
            assert session.count_events() == 0

    def test_invalid_params_are_400(self, client) -> None:
        response = client.post("/analytics/prune", params={"retention_days": 0})
        assert response.status_code == 400
        assert response.json()["detail"]["errors"][0]["code"] == "invalid_retention_days"

    def test_out_of_range_params(self, client, record, store) -> None:
        record("page_viewed", days_ago=200)

        kept = client.post("/analytics/prune", params={"retention_days": 10**12})
        too_big = client.post("/analytics/prune", params={"batch_size": 10**12})

        assert kept.json() == {"deleted": 0, "has_more": False}
        assert too_big.status_code == 400
        assert too_big.json()["detail"]["errors"][0]["code"] == "invalid_batch_size"
        with store.reader() as session:
            assert session.count_events() == 1


# --- Failure surface ---


class TestStorageUnavailable:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/analytics/summary"),
            ("get", "/analytics/series/views"),
            ("get", "/analytics/top/products"),
            ("get", "/analytics/funnel/checkout"),
            ("post", "/analytics/prune"),
        ],
    )
    def test_storage_error_is_503_not_zeros(self, time_port, method, path) -> None:
        client = TestClient(build_app(BrokenStore(), time_port))

        response = getattr(client, method)(path)

        assert response.status_code == 503
        assert response.json()["detail"]["errors"][0]["code"] == "storage_unavailable"
