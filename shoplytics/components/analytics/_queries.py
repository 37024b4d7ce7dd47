"""
AnalyticsQueryService - dashboard reads over rollups and event ranges.

Fast path reads aggregate buckets; slow path scans events for counts no
rollup covers (authenticated-only actives, funnels, retention).

Unique actor counts use row existence in activeUsers: each bucket row is
one (day, actor) pair, so the number of rows for a day is that day's
unique actors, and distinct dimensions across a multi-day range give the
range's unique actors. Summing activeUsers accumulators counts events and
is never used for uniques.

Missing buckets read as zero. Storage errors propagate.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from shoplytics.core.entities import AggregateBucket
from shoplytics.core.ports.time import to_millis

from ._definitions import (
    ACTIVE_USERS,
    CART_EVENTS,
    CART_ITEM_ADDED,
    CATEGORY_VIEWS,
    CHECKOUT_FUNNEL,
    CHECKOUT_STARTED,
    CHECKOUT_STEP_VIEWED,
    COUPON_USAGE,
    DAILY_VIEWS,
    DAY_MS,
    EPOCH_DAY,
    ORDER_COMPLETED,
    PRODUCT_VIEWS,
    SALES,
    SEARCH_QUERIES,
    STEP_COMPLETED,
    STEP_STARTED,
    day_key,
    normalize_step,
    parse_day,
    shift_day,
    start_of_day,
)
from ._impl import DefaultTimePort
from .models import (
    CartMetricsOutput,
    ConversionOutput,
    CouponMetricsOutput,
    FunnelOutput,
    FunnelStage,
    FunnelStep,
    PeriodComparison,
    RetentionOutput,
    SearchMetricsOutput,
    SeriesPoint,
    SummaryOutput,
    TimeSeriesOutput,
    TopItem,
)
from .ports import AnalyticsSessionPort, AnalyticsStorePort, TimePort

DEFAULT_CHECKOUT_FUNNEL: tuple[FunnelStage, ...] = (
    FunnelStage("Started", CHECKOUT_STARTED),
    FunnelStage("Shipping", CHECKOUT_STEP_VIEWED, "shipping"),
    FunnelStage("Payment", CHECKOUT_STEP_VIEWED, "payment"),
    FunnelStage("Completed", ORDER_COMPLETED),
)


@dataclass(frozen=True)
class QueryConfig:
    """Dashboard windows and limits."""

    daily_points: int = 30
    weekly_points: int = 12
    monthly_points: int = 12
    top_n_default: int = 10
    top_n_max: int = 100
    funnel_window_days: int = 30
    checkout_funnel: tuple[FunnelStage, ...] = field(default=DEFAULT_CHECKOUT_FUNNEL)


# --- Pure helpers ---


def percent_change(current: float, previous: float) -> float:
    """(current - previous) / previous * 100; 100 or 0 when previous is 0."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100, 1)


def rate(numerator: float, denominator: float) -> float:
    """numerator / denominator as a percent, 0 when denominator is 0."""
    if denominator == 0:
        return 0.0
    return round(numerator / denominator * 100, 1)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _compare(current: float, previous: float) -> PeriodComparison:
    return PeriodComparison(
        current=current, previous=previous, change=percent_change(current, previous)
    )


@dataclass(frozen=True)
class _Period:
    label: str
    bucket_key: str
    start_day: str
    end_day: str


def _daily_periods(today: str, n: int) -> list[_Period]:
    periods = []
    for i in range(n - 1, -1, -1):
        day = shift_day(today, -i)
        dt = parse_day(day)
        periods.append(_Period(f"{dt:%b} {dt.day}", day, day, day))
    return periods


def _weekly_periods(today: str, n: int) -> list[_Period]:
    # ISO weeks, Monday..Sunday.
    current = parse_day(today)
    monday = current - timedelta(days=current.weekday())
    periods = []
    for i in range(n - 1, -1, -1):
        start = monday - timedelta(weeks=i)
        end = start + timedelta(days=6)
        year, week, _ = start.isocalendar()
        periods.append(
            _Period(
                f"Week {week}",
                f"{year}-W{week:02d}",
                start.strftime("%Y-%m-%d"),
                end.strftime("%Y-%m-%d"),
            )
        )
    return periods


def _monthly_periods(today: str, n: int) -> list[_Period]:
    current = parse_day(today)
    periods = []
    for i in range(n - 1, -1, -1):
        month_index = current.year * 12 + (current.month - 1) - i
        year, month = divmod(month_index, 12)
        start = datetime(year, month + 1, 1, tzinfo=UTC)
        next_index = month_index + 1
        next_start = datetime(next_index // 12, next_index % 12 + 1, 1, tzinfo=UTC)
        end = next_start - timedelta(days=1)
        periods.append(
            _Period(
                f"{start:%b %Y}",
                f"{start:%Y-%m}",
                start.strftime("%Y-%m-%d"),
                end.strftime("%Y-%m-%d"),
            )
        )
    return periods


def _sum(buckets: Iterable[AggregateBucket]) -> float:
    return sum(b.accumulator for b in buckets)


def _count(buckets: Iterable[AggregateBucket]) -> int:
    return sum(b.count for b in buckets)


def _distinct_dimensions(buckets: Iterable[AggregateBucket]) -> int:
    return len({b.dimension for b in buckets})


def rank_buckets(
    buckets: Iterable[AggregateBucket],
    limit: int,
    by_count: bool = False,
) -> tuple[TopItem, ...]:
    """
    Group buckets by dimension and rank descending.

    Buckets must arrive in first-seen order ((day, seq)); the stable sort
    keeps that order among ties.
    """
    totals: dict[str, list[float]] = {}
    for bucket in buckets:
        if bucket.dimension is None:
            continue
        entry = totals.setdefault(bucket.dimension, [0.0, 0])
        entry[0] += bucket.accumulator
        entry[1] += bucket.count

    items = [TopItem(key=k, value=v[0], count=int(v[1])) for k, v in totals.items()]
    items.sort(key=(lambda i: i.count) if by_count else (lambda i: i.value), reverse=True)
    return tuple(items[:limit])


# --- Service ---


class AnalyticsQueryService:
    """Read-only dashboard queries."""

    def __init__(
        self,
        store: AnalyticsStorePort,
        time_port: TimePort | None = None,
        config: QueryConfig | None = None,
    ) -> None:
        self._store = store
        self._time = time_port or DefaultTimePort()
        self._config = config or QueryConfig()

    @property
    def config(self) -> QueryConfig:
        return self._config

    # --- clock ---

    def _now_ms(self) -> int:
        return to_millis(self._time.now_utc())

    def _today(self) -> str:
        return day_key(self._now_ms())

    def _day_window_ms(self, days: int, offset_days: int = 0) -> tuple[int, int]:
        """[start, end) covering `days` UTC days ending today - offset_days; start >= 0."""
        end = start_of_day(self._now_ms()) + DAY_MS - offset_days * DAY_MS
        return max(end - days * DAY_MS, 0), end

    def _clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._config.top_n_default
        return max(1, min(limit, self._config.top_n_max))

    # --- time series ---

    def points_for(self, interval: str) -> int:
        if interval == "daily":
            return self._config.daily_points
        if interval == "weekly":
            return self._config.weekly_points
        if interval == "monthly":
            return self._config.monthly_points
        raise ValueError(f"Unknown interval: {interval}")

    def get_time_series(
        self, metric: str, interval: str, limit: int | None = None
    ) -> TimeSeriesOutput:
        """N most recent periods ending with the current one, oldest first."""
        window = self.points_for(interval)
        n = window if limit is None else max(1, min(limit, window))
        today = self._today()
        if interval == "daily":
            periods = _daily_periods(today, n)
        elif interval == "weekly":
            periods = _weekly_periods(today, n)
        else:
            periods = _monthly_periods(today, n)

        if metric == "views":
            definition = DAILY_VIEWS
        elif metric == "visitors":
            definition = ACTIVE_USERS
        elif metric in ("sales", "orders"):
            definition = SALES
        else:
            raise ValueError(f"Unknown metric: {metric}")

        with self._store.reader() as session:
            buckets = session.scan_buckets(definition, periods[0].start_day, periods[-1].end_day)

        points = []
        for period in periods:
            in_period = [b for b in buckets if period.start_day <= b.day <= period.end_day]
            orders: int | None = None
            if metric == "views":
                value = _sum(in_period)
            elif metric == "visitors":
                value = float(_distinct_dimensions(in_period))
            elif metric == "sales":
                value = _sum(in_period)
                orders = _count(in_period)
            else:
                value = float(_count(in_period))
            points.append(SeriesPoint(period.label, period.bucket_key, value, orders))

        return TimeSeriesOutput(metric=metric, interval=interval, points=tuple(points))

    # --- summary ---

    def _day_range(self, days: int, offset_days: int = 0) -> tuple[str, str]:
        """(start_day, end_day) covering `days` UTC days ending today - offset_days."""
        end_day = shift_day(self._today(), -offset_days)
        # Nothing is stored before the epoch.
        days = min(max(1, days), (parse_day(end_day) - parse_day(EPOCH_DAY)).days + 1)
        return shift_day(end_day, -(days - 1)), end_day

    def _range_buckets(
        self, session: AnalyticsSessionPort, definition: str, days: int, offset_days: int = 0
    ) -> list[AggregateBucket]:
        start_day, end_day = self._day_range(days, offset_days)
        return session.scan_buckets(definition, start_day, end_day)

    def _views(self, session: AnalyticsSessionPort, days: int, offset_days: int = 0) -> float:
        return _sum(self._range_buckets(session, DAILY_VIEWS, days, offset_days))

    def _visitors(self, session: AnalyticsSessionPort, days: int, offset_days: int = 0) -> int:
        return _distinct_dimensions(self._range_buckets(session, ACTIVE_USERS, days, offset_days))

    def _authenticated_actives(
        self, session: AnalyticsSessionPort, days: int, offset_days: int = 0
    ) -> int:
        start_ms, end_ms = self._day_window_ms(days, offset_days)
        events = session.scan_events(start_ms, end_ms, authenticated_only=True)
        return len({e.user_id for e in events})

    def get_summary(self, top_products_limit: int = 5) -> SummaryOutput:
        """Every figure comes from one read snapshot."""
        comparisons = {}
        with self._store.reader() as session:
            for label, days in (("today", 1), ("week", 7), ("month", 30)):
                comparisons[f"views_{label}"] = _compare(
                    self._views(session, days), self._views(session, days, days)
                )
                comparisons[f"visitors_{label}"] = _compare(
                    self._visitors(session, days), self._visitors(session, days, days)
                )
            for label, days in (("dau", 1), ("wau", 7), ("mau", 30)):
                comparisons[label] = _compare(
                    self._authenticated_actives(session, days),
                    self._authenticated_actives(session, days, days),
                )

            total_views = _sum(session.scan_buckets(DAILY_VIEWS))
            total_visitors = len(session.scan_buckets(ACTIVE_USERS))
            top_products = self._top(session, PRODUCT_VIEWS, 30, top_products_limit)

        return SummaryOutput(
            **comparisons,
            total_views=int(total_views),
            total_visitors=total_visitors,
            top_products=top_products,
        )

    # --- top-N ---

    def _top(
        self,
        session: AnalyticsSessionPort,
        definition: str,
        days: int,
        limit: int | None,
        by_count: bool = False,
    ) -> tuple[TopItem, ...]:
        buckets = self._range_buckets(session, definition, days)
        return rank_buckets(buckets, self._clamp_limit(limit), by_count)

    def _top_in_reader(
        self, definition: str, days: int, limit: int | None, by_count: bool = False
    ) -> tuple[TopItem, ...]:
        with self._store.reader() as session:
            return self._top(session, definition, days, limit, by_count)

    def get_top_products(self, days: int = 30, limit: int | None = None) -> tuple[TopItem, ...]:
        return self._top_in_reader(PRODUCT_VIEWS, days, limit)

    def get_top_categories(self, days: int = 30, limit: int | None = None) -> tuple[TopItem, ...]:
        return self._top_in_reader(CATEGORY_VIEWS, days, limit)

    def get_top_coupons(self, days: int = 30, limit: int | None = None) -> tuple[TopItem, ...]:
        """Ranked by successful uses; value carries the total discount."""
        return self._top_in_reader(COUPON_USAGE, days, limit, by_count=True)

    def get_top_searches(self, days: int = 30, limit: int | None = None) -> tuple[TopItem, ...]:
        return self._top_in_reader(SEARCH_QUERIES, days, limit)

    # --- funnel ---

    def get_funnel(
        self, stages: Iterable[FunnelStage], window_days: int | None = None
    ) -> FunnelOutput:
        """
        Distinct actors per stage over a trailing window.

        An actor counts for a stage only if it counted for the previous
        one, so counts never increase down the funnel.
        """
        stages = tuple(stages)
        days = max(1, window_days or self._config.funnel_window_days)
        start_ms, end_ms = self._day_window_ms(days)
        names = {s.event_name for s in stages}

        with self._store.reader() as session:
            events = session.scan_events(start_ms, end_ms, names)

        reached: list[set[str]] = [set() for _ in stages]
        for event in events:
            actor = event.actor_id
            if not actor:
                continue
            for index, stage in enumerate(stages):
                if event.name != stage.event_name:
                    continue
                if stage.step is not None and normalize_step(event.properties.get("step")) != stage.step:
                    continue
                reached[index].add(actor)

        steps = []
        previous: set[str] | None = None
        for stage, actors in zip(stages, reached, strict=True):
            if previous is not None:
                actors = actors & previous
            count = len(actors)
            if previous is None:
                drop_off = 0.0
            else:
                drop_off = rate(len(previous) - count, len(previous))
            steps.append(FunnelStep(name=stage.label, count=count, drop_off=drop_off))
            previous = actors

        total_conversion = rate(steps[-1].count, steps[0].count) if steps else 0.0
        return FunnelOutput(steps=tuple(steps), total_conversion=total_conversion)

    def get_checkout_funnel(self, window_days: int | None = None) -> FunnelOutput:
        return self.get_funnel(self._config.checkout_funnel, window_days)

    # --- conversion / cart ---

    @staticmethod
    def _bucket_count(
        session: AnalyticsSessionPort, definition: str, day: str, dimension: str
    ) -> int:
        bucket = session.get_bucket(definition, (day, dimension))
        return bucket.count if bucket else 0

    def _day_totals(self, session: AnalyticsSessionPort, day: str) -> dict[str, int]:
        product_views = _sum(session.scan_buckets(PRODUCT_VIEWS, day, day))
        return {
            "product_views": int(product_views),
            "add_to_carts": self._bucket_count(session, CART_EVENTS, day, CART_ITEM_ADDED),
            "checkouts": self._bucket_count(session, CHECKOUT_FUNNEL, day, STEP_STARTED),
            "orders": self._bucket_count(session, CHECKOUT_FUNNEL, day, STEP_COMPLETED),
        }

    def get_conversion_metrics(self) -> ConversionOutput:
        today = self._today()
        with self._store.reader() as session:
            now = self._day_totals(session, today)
            before = self._day_totals(session, shift_day(today, -1))

        def rates(t: dict[str, int]) -> tuple[float, float, float, float]:
            return (
                rate(t["add_to_carts"], t["product_views"]),
                rate(t["checkouts"], t["add_to_carts"]),
                rate(t["orders"], t["checkouts"]),
                rate(t["orders"], t["product_views"]),
            )

        p2c, c2c, c2o, overall = rates(now)
        y_p2c, y_c2c, y_c2o, y_overall = rates(before)

        return ConversionOutput(
            product_to_cart_rate=p2c,
            cart_to_checkout_rate=c2c,
            checkout_to_order_rate=c2o,
            overall_conversion_rate=overall,
            product_to_cart_rate_change=percent_change(p2c, y_p2c),
            cart_to_checkout_rate_change=percent_change(c2c, y_c2c),
            checkout_to_order_rate_change=percent_change(c2o, y_c2o),
            overall_conversion_rate_change=percent_change(overall, y_overall),
            product_views_today=now["product_views"],
            add_to_carts_today=now["add_to_carts"],
            checkouts_started_today=now["checkouts"],
            orders_completed_today=now["orders"],
        )

    def _abandonment(self, session: AnalyticsSessionPort, day: str) -> tuple[int, float]:
        started = self._bucket_count(session, CHECKOUT_FUNNEL, day, STEP_STARTED)
        completed = self._bucket_count(session, CHECKOUT_FUNNEL, day, STEP_COMPLETED)
        abandoned = max(started - completed, 0)
        return abandoned, rate(abandoned, started)

    def get_cart_metrics(self) -> CartMetricsOutput:
        today = self._today()
        week_start = shift_day(today, -6)

        with self._store.reader() as session:
            carts_week = [
                b
                for b in session.scan_buckets(CART_EVENTS, week_start, today)
                if b.dimension == CART_ITEM_ADDED
            ]
            sales_week = session.scan_buckets(SALES, week_start, today)
            abandoned_today, rate_today = self._abandonment(session, today)
            _, rate_yesterday = self._abandonment(session, shift_day(today, -1))

        carts_today = [b for b in carts_week if b.day == today]
        sales_today = [b for b in sales_week if b.day == today]

        orders_today = _count(sales_today)
        orders_week = _count(sales_week)

        return CartMetricsOutput(
            carts_created_today=_count(carts_today),
            carts_created_week=_count(carts_week),
            abandoned_checkouts_today=abandoned_today,
            abandonment_rate_today=rate_today,
            abandonment_rate_change=percent_change(rate_today, rate_yesterday),
            average_order_value_today=round(_sum(sales_today) / orders_today, 2) if orders_today else 0.0,
            average_order_value_week=round(_sum(sales_week) / orders_week, 2) if orders_week else 0.0,
            orders_today=orders_today,
            orders_week=orders_week,
        )

    # --- coupons / searches ---

    def get_coupon_metrics(self, days: int = 30, limit: int | None = None) -> CouponMetricsOutput:
        with self._store.reader() as session:
            buckets = self._range_buckets(session, COUPON_USAGE, days)
        return CouponMetricsOutput(
            total_uses=_count(buckets),
            total_discount=round(_sum(buckets), 2),
            top_coupons=rank_buckets(buckets, self._clamp_limit(limit), by_count=True),
        )

    def get_search_metrics(self, days: int = 30, limit: int | None = None) -> SearchMetricsOutput:
        with self._store.reader() as session:
            buckets = self._range_buckets(session, SEARCH_QUERIES, days)
        return SearchMetricsOutput(
            total_searches=_count(buckets),
            top_searches=rank_buckets(buckets, self._clamp_limit(limit)),
        )

    # --- retention ---

    def get_retention(self, active_days: int = 30) -> RetentionOutput:
        """
        Among users active in the trailing window, percent whose retained
        history spans at least 1, 7 and 30 days.
        """
        now_ms = self._now_ms()
        recent_cutoff = now_ms - active_days * DAY_MS

        with self._store.reader() as session:
            events = session.scan_events(0, now_ms + 1, authenticated_only=True)

        spans: dict[str, list[int]] = {}
        for event in events:
            assert event.user_id is not None
            first_last = spans.setdefault(event.user_id, [event.timestamp, event.timestamp])
            first_last[0] = min(first_last[0], event.timestamp)
            first_last[1] = max(first_last[1], event.timestamp)

        recent = [(first, last) for first, last in spans.values() if last >= recent_cutoff]
        if not recent:
            return RetentionOutput(active_users=0, day1=0, day7=0, day30=0)

        def share(min_days: int) -> int:
            hits = sum(1 for first, last in recent if (last - first) >= min_days * DAY_MS)
            return _round_half_up(hits / len(recent) * 100)

        return RetentionOutput(
            active_users=len(recent), day1=share(1), day7=share(7), day30=share(30)
        )


def create_query_service(
    store: AnalyticsStorePort,
    time_port: TimePort | None = None,
    config: QueryConfig | None = None,
) -> AnalyticsQueryService:
    return AnalyticsQueryService(store=store, time_port=time_port, config=config)
