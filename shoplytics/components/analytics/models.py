"""
Analytics component input/output models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from shoplytics.core.entities import Event

# --- Validation Error ---


@dataclass(frozen=True)
class AnalyticsValidationError:
    """Analytics validation error."""

    code: str
    message: str
    field_name: str | None = None


# --- Enums ---


Interval = Literal["daily", "weekly", "monthly"]
SeriesMetric = Literal["views", "visitors", "sales", "orders"]

INTERVALS: tuple[str, ...] = ("daily", "weekly", "monthly")
SERIES_METRICS: tuple[str, ...] = ("views", "visitors", "sales", "orders")


# --- Input Models ---


@dataclass(frozen=True)
class IngestEventInput:
    """Input for ingesting one event."""

    name: Any
    properties: Any = None
    user_id: str | None = None
    anonymous_id: str | None = None
    timestamp: int | float | str | datetime | None = None
    event_id: str | None = None


@dataclass(frozen=True)
class IngestBatchInput:
    """Input for ingesting several events, one transaction each."""

    events: tuple[IngestEventInput, ...]


@dataclass(frozen=True)
class LinkIdentityInput:
    """Input for stitching anonymous activity to an authenticated user."""

    anonymous_id: str
    user_id: str | None = None


@dataclass(frozen=True)
class PruneInput:
    """Input for one retention batch. None means configured default."""

    retention_days: int | None = None
    batch_size: int | None = None


@dataclass(frozen=True)
class TimeSeriesInput:
    """Input for a time series query."""

    metric: str = "views"
    interval: str = "daily"
    limit: int | None = None


@dataclass(frozen=True)
class TopNInput:
    """Input for a top-N query over a trailing window of days."""

    days: int = 30
    limit: int | None = None


@dataclass(frozen=True)
class FunnelStage:
    """One funnel stage: an event name, optionally narrowed to a checkout step."""

    label: str
    event_name: str
    step: str | None = None


@dataclass(frozen=True)
class FunnelInput:
    """Input for a funnel query."""

    stages: tuple[FunnelStage, ...]
    window_days: int | None = None


# --- Output Models ---


@dataclass(frozen=True)
class IngestOutput:
    """Output for ingestion result."""

    event: Event | None
    accepted: bool
    errors: list[AnalyticsValidationError] = field(default_factory=list)
    success: bool = True


@dataclass(frozen=True)
class BatchItemResult:
    """Per-event outcome inside a batch."""

    index: int
    event_id: str | None
    errors: list[AnalyticsValidationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class IngestBatchOutput:
    """Output for batch ingestion."""

    results: tuple[BatchItemResult, ...]
    accepted: int
    errors: list[AnalyticsValidationError] = field(default_factory=list)
    success: bool = True


@dataclass(frozen=True)
class LinkIdentityOutput:
    """Output for identity stitching."""

    linked: int
    errors: list[AnalyticsValidationError] = field(default_factory=list)
    success: bool = True


@dataclass(frozen=True)
class PruneOutput:
    """Output for one retention batch."""

    deleted: int
    has_more: bool
    errors: list[AnalyticsValidationError] = field(default_factory=list)
    success: bool = True


@dataclass(frozen=True)
class SeriesPoint:
    """Single point in a time series."""

    label: str
    bucket_key: str
    value: float
    orders: int | None = None


@dataclass(frozen=True)
class TimeSeriesOutput:
    """Output for a time series query. Points are oldest first."""

    metric: str
    interval: str
    points: tuple[SeriesPoint, ...]
    errors: list[AnalyticsValidationError] = field(default_factory=list)
    success: bool = True


@dataclass(frozen=True)
class PeriodComparison:
    """A value for the current period against the preceding one."""

    current: float
    previous: float
    change: float


@dataclass(frozen=True)
class TopItem:
    """Single entry in a top-N list."""

    key: str
    value: float
    count: int


@dataclass(frozen=True)
class TopNOutput:
    """Output for a top-N query."""

    items: tuple[TopItem, ...]
    errors: list[AnalyticsValidationError] = field(default_factory=list)
    success: bool = True


@dataclass(frozen=True)
class SummaryOutput:
    """Dashboard summary."""

    views_today: PeriodComparison
    views_week: PeriodComparison
    views_month: PeriodComparison
    visitors_today: PeriodComparison
    visitors_week: PeriodComparison
    visitors_month: PeriodComparison
    dau: PeriodComparison
    wau: PeriodComparison
    mau: PeriodComparison
    total_views: int
    total_visitors: int
    top_products: tuple[TopItem, ...]


@dataclass(frozen=True)
class FunnelStep:
    """Funnel stage result. drop_off is the percent lost from the previous stage."""

    name: str
    count: int
    drop_off: float


@dataclass(frozen=True)
class FunnelOutput:
    """Output for a funnel query."""

    steps: tuple[FunnelStep, ...]
    total_conversion: float
    errors: list[AnalyticsValidationError] = field(default_factory=list)
    success: bool = True


@dataclass(frozen=True)
class ConversionOutput:
    """Today's conversion rates (percent) with change against yesterday."""

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


@dataclass(frozen=True)
class CartMetricsOutput:
    """Cart and checkout abandonment metrics."""

    carts_created_today: int
    carts_created_week: int
    abandoned_checkouts_today: int
    abandonment_rate_today: float
    abandonment_rate_change: float
    average_order_value_today: float
    average_order_value_week: float
    orders_today: int
    orders_week: int


@dataclass(frozen=True)
class CouponMetricsOutput:
    """Successful coupon uses over a trailing window."""

    total_uses: int
    total_discount: float
    top_coupons: tuple[TopItem, ...]


@dataclass(frozen=True)
class SearchMetricsOutput:
    """Searches over a trailing window."""

    total_searches: int
    top_searches: tuple[TopItem, ...]


@dataclass(frozen=True)
class RetentionOutput:
    """Percent of recently active users whose activity spans at least N days."""

    active_users: int
    day1: int
    day7: int
    day30: int
