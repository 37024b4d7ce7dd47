"""
Admin Analytics API.

Dashboard reads over the rollups, plus a manual retention trigger.
Empty data renders as zeros; storage failures return 503.
"""

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from shoplytics.api.deps import get_analytics_rules, get_store, get_time_port, storage_guard
from shoplytics.components.analytics import (
    AnalyticsStorePort,
    AnalyticsValidationError,
    PruneInput,
    TimePort,
    TimeSeriesInput,
    TopNInput,
    run_prune,
    run_query_cart,
    run_query_checkout_funnel,
    run_query_conversion,
    run_query_coupons,
    run_query_retention,
    run_query_searches,
    run_query_summary,
    run_query_time_series,
    run_query_top,
)
from shoplytics.rules.models import AnalyticsRules

router = APIRouter()


# --- Response Models ---


class SeriesPointResponse(BaseModel):
    label: str
    bucket_key: str
    value: float
    orders: int | None = None


class TimeSeriesResponse(BaseModel):
    metric: str
    interval: str
    points: list[SeriesPointResponse]


class ComparisonResponse(BaseModel):
    current: float
    previous: float
    change: float


class TopItemResponse(BaseModel):
    key: str
    value: float
    count: int


class SummaryResponse(BaseModel):
    views_today: ComparisonResponse
    views_week: ComparisonResponse
    views_month: ComparisonResponse
    visitors_today: ComparisonResponse
    visitors_week: ComparisonResponse
    visitors_month: ComparisonResponse
    dau: ComparisonResponse
    wau: ComparisonResponse
    mau: ComparisonResponse
    total_views: int
    total_visitors: int
    top_products: list[TopItemResponse]


class TopResponse(BaseModel):
    items: list[TopItemResponse]


class FunnelStepResponse(BaseModel):
    name: str
    count: int
    drop_off: float


class FunnelResponse(BaseModel):
    steps: list[FunnelStepResponse]
    total_conversion: float


class ConversionResponse(BaseModel):
    product_to_cart_rate: float
    cart_to_checkout_rate: float
    checkout_to_order_rate: float
    overall_conversion_rate: float
    product_to_cart_rate_change: float
    cart_to_checkout_rate_change: float
    checkout_to_order_rate_change: float
    overall_conversion_rate_change: float
    product_views_today: int
    add_to_carts_today: int
    checkouts_started_today: int
    orders_completed_today: int


class CartResponse(BaseModel):
    carts_created_today: int
    carts_created_week: int
    abandoned_checkouts_today: int
    abandonment_rate_today: float
    abandonment_rate_change: float
    average_order_value_today: float
    average_order_value_week: float
    orders_today: int
    orders_week: int


class CouponsResponse(BaseModel):
    total_uses: int
    total_discount: float
    top_coupons: list[TopItemResponse]


class SearchesResponse(BaseModel):
    total_searches: int
    top_searches: list[TopItemResponse]


class RetentionResponse(BaseModel):
    active_users: int
    day1: int
    day7: int
    day30: int


class PruneResponse(BaseModel):
    deleted: int
    has_more: bool


def _bad_request(errors: list[AnalyticsValidationError]) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={
            "ok": False,
            "errors": [
                {"code": e.code, "message": e.message, "field": e.field_name} for e in errors
            ],
        },
    )


def _payload(out: Any) -> dict[str, Any]:
    data = asdict(out)
    data.pop("errors", None)
    data.pop("success", None)
    return data


# --- Routes ---


@router.get("/summary", response_model=SummaryResponse)
def get_summary(
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> SummaryResponse:
    """Views, visitors and DAU/WAU/MAU against the preceding period."""
    with storage_guard():
        out = run_query_summary(store=store, time_port=time_port, rules=rules)
    return SummaryResponse(**asdict(out))


@router.get("/series/{metric}", response_model=TimeSeriesResponse)
def get_series(
    metric: str,
    interval: str = Query("daily"),
    limit: int | None = Query(None),
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> TimeSeriesResponse:
    """Views, visitors, sales or orders per day, ISO week or month."""
    inp = TimeSeriesInput(metric=metric, interval=interval, limit=limit)
    with storage_guard():
        out = run_query_time_series(inp, store=store, time_port=time_port, rules=rules)
    if not out.success:
        raise _bad_request(out.errors)
    return TimeSeriesResponse(**_payload(out))


@router.get("/funnel/checkout", response_model=FunnelResponse)
def get_checkout_funnel(
    days: int | None = Query(None, ge=1),
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> FunnelResponse:
    with storage_guard():
        out = run_query_checkout_funnel(days, store=store, time_port=time_port, rules=rules)
    if not out.success:
        raise _bad_request(out.errors)
    return FunnelResponse(**_payload(out))


@router.get("/top/{dimension}", response_model=TopResponse)
def get_top(
    dimension: str,
    days: int = Query(30),
    limit: int | None = Query(None, ge=1),
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> TopResponse:
    """Top products, categories, coupons or searches."""
    with storage_guard():
        out = run_query_top(
            dimension, TopNInput(days=days, limit=limit), store=store, time_port=time_port, rules=rules
        )
    if not out.success:
        raise _bad_request(out.errors)
    return TopResponse(**_payload(out))


@router.get("/conversion", response_model=ConversionResponse)
def get_conversion(
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> ConversionResponse:
    with storage_guard():
        out = run_query_conversion(store=store, time_port=time_port, rules=rules)
    return ConversionResponse(**asdict(out))


@router.get("/cart", response_model=CartResponse)
def get_cart(
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> CartResponse:
    with storage_guard():
        out = run_query_cart(store=store, time_port=time_port, rules=rules)
    return CartResponse(**asdict(out))


@router.get("/coupons", response_model=CouponsResponse)
def get_coupons(
    days: int = Query(30, ge=1),
    limit: int | None = Query(None, ge=1),
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> CouponsResponse:
    with storage_guard():
        out = run_query_coupons(
            TopNInput(days=days, limit=limit), store=store, time_port=time_port, rules=rules
        )
    return CouponsResponse(**asdict(out))


@router.get("/searches", response_model=SearchesResponse)
def get_searches(
    days: int = Query(30, ge=1),
    limit: int | None = Query(None, ge=1),
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> SearchesResponse:
    with storage_guard():
        out = run_query_searches(
            TopNInput(days=days, limit=limit), store=store, time_port=time_port, rules=rules
        )
    return SearchesResponse(**asdict(out))


@router.get("/retention", response_model=RetentionResponse)
def get_retention(
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
) -> RetentionResponse:
    with storage_guard():
        out = run_query_retention(store=store, time_port=time_port)
    return RetentionResponse(**asdict(out))


@router.post("/prune", response_model=PruneResponse)
def prune(
    retention_days: int | None = Query(None),
    batch_size: int | None = Query(None),
    store: AnalyticsStorePort = Depends(get_store),
    time_port: TimePort = Depends(get_time_port),
    rules: AnalyticsRules = Depends(get_analytics_rules),
) -> PruneResponse:
    """Run one retention batch. Call again while has_more is true."""
    with storage_guard():
        out = run_prune(
            PruneInput(retention_days=retention_days, batch_size=batch_size),
            store=store,
            time_port=time_port,
            rules=rules,
        )
    if not out.success:
        raise _bad_request(out.errors)
    return PruneResponse(deleted=out.deleted, has_more=out.has_more)
