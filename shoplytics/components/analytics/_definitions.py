"""
Aggregate definitions: the nine storefront rollups.

Each definition is a pair of pure functions over an event:
- key_fn(event) -> bucket key, or None when the event does not participate
- value_fn(event) -> numeric contribution added to the bucket accumulator

Properties are schema-less, so every key_fn type-checks the fields it
reads; anything unexpected means "does not participate".

Calendar helpers bucket epoch milliseconds by UTC day, ISO week and month.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from shoplytics.core.entities import BucketKey, Event

DAY_MS = 24 * 60 * 60 * 1000
EPOCH_DAY = "1970-01-01"

# --- Event names ---

PAGE_VIEWED = "page_viewed"
PRODUCT_VIEWED = "product_viewed"
CATEGORY_VIEWED = "category_viewed"
CART_ITEM_ADDED = "cart_item_added"
CART_ITEM_REMOVED = "cart_item_removed"
CART_VIEWED = "cart_viewed"
CHECKOUT_STARTED = "checkout_started"
CHECKOUT_STEP_VIEWED = "checkout_step_viewed"
ORDER_COMPLETED = "order_completed"
COUPON_APPLIED = "coupon_applied"
SEARCH_PERFORMED = "search_performed"

CART_EVENT_NAMES = frozenset({CART_ITEM_ADDED, CART_ITEM_REMOVED, CART_VIEWED})

STEP_STARTED = "started"
STEP_COMPLETED = "completed"

# --- Definition names ---

DAILY_VIEWS = "dailyViews"
ACTIVE_USERS = "activeUsers"
PRODUCT_VIEWS = "productViews"
CART_EVENTS = "cartEvents"
CHECKOUT_FUNNEL = "checkoutFunnel"
SALES = "sales"
COUPON_USAGE = "couponUsage"
CATEGORY_VIEWS = "categoryViews"
SEARCH_QUERIES = "searchQueries"


# --- Calendar helpers ---


def to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=UTC)


def day_key(ms: int) -> str:
    """UTC calendar day, YYYY-MM-DD."""
    return to_datetime(ms).strftime("%Y-%m-%d")


def week_key(ms: int) -> str:
    """ISO week, YYYY-Www (weeks start on Monday)."""
    year, week, _ = to_datetime(ms).isocalendar()
    return f"{year}-W{week:02d}"


def month_key(ms: int) -> str:
    """Calendar month, YYYY-MM."""
    return to_datetime(ms).strftime("%Y-%m")


def start_of_day(ms: int) -> int:
    dt = to_datetime(ms)
    midnight = datetime(dt.year, dt.month, dt.day, tzinfo=UTC)
    return int(midnight.timestamp() * 1000)


def end_of_day(ms: int) -> int:
    """Last millisecond of the UTC day containing ms."""
    return start_of_day(ms) + DAY_MS - 1


def parse_day(day: str) -> datetime:
    return datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=UTC)


def shift_day(day: str, days: int) -> str:
    return (parse_day(day) + timedelta(days=days)).strftime("%Y-%m-%d")


# --- Property readers ---


def _clean_str(value: Any) -> str | None:
    """Non-empty trimmed string, else None."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _number(value: Any) -> float:
    """Finite numeric value, else 0. Booleans are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0.0
    value = float(value)
    if not math.isfinite(value):
        return 0.0
    return value


def normalize_step(value: Any) -> str | None:
    """Checkout step label: trimmed lower-case string, or an integer rendered as decimal."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    cleaned = _clean_str(value)
    return cleaned.lower() if cleaned else None


def normalize_query(value: Any) -> str | None:
    cleaned = _clean_str(value)
    return cleaned.lower() if cleaned else None


# --- Definitions ---


@dataclass(frozen=True)
class AggregateDefinition:
    """A named rollup: which bucket an event falls into and what it adds."""

    name: str
    key_fn: Callable[[Event], BucketKey | None]
    value_fn: Callable[[Event], float]
    description: str = ""


def _one(event: Event) -> float:
    return 1.0


def _daily_views_key(event: Event) -> BucketKey | None:
    if event.name != PAGE_VIEWED:
        return None
    return (day_key(event.timestamp),)


def _active_users_key(event: Event) -> BucketKey | None:
    # One row per (day, actor). Unique counts come from counting rows,
    # never from summing accumulators (that would count events).
    actor = _clean_str(event.actor_id)
    if actor is None:
        return None
    return (day_key(event.timestamp), actor)


def _product_views_key(event: Event) -> BucketKey | None:
    if event.name != PRODUCT_VIEWED:
        return None
    product_id = _clean_str(event.properties.get("productId"))
    if product_id is None:
        return None
    return (day_key(event.timestamp), product_id)


def _cart_events_key(event: Event) -> BucketKey | None:
    if event.name not in CART_EVENT_NAMES:
        return None
    return (day_key(event.timestamp), event.name)


def _checkout_funnel_key(event: Event) -> BucketKey | None:
    if event.name == CHECKOUT_STARTED:
        step: str | None = STEP_STARTED
    elif event.name == ORDER_COMPLETED:
        step = STEP_COMPLETED
    elif event.name == CHECKOUT_STEP_VIEWED:
        step = normalize_step(event.properties.get("step"))
    else:
        return None
    if step is None:
        return None
    return (day_key(event.timestamp), step)


def _sales_key(event: Event) -> BucketKey | None:
    if event.name != ORDER_COMPLETED:
        return None
    return (day_key(event.timestamp),)


def _sales_value(event: Event) -> float:
    return _number(event.properties.get("total"))


def _coupon_usage_key(event: Event) -> BucketKey | None:
    if event.name != COUPON_APPLIED:
        return None
    if event.properties.get("success") is not True:
        return None
    code = _clean_str(event.properties.get("couponCode"))
    if code is None:
        return None
    return (day_key(event.timestamp), code)


def _coupon_usage_value(event: Event) -> float:
    return _number(event.properties.get("discountAmount"))


def _category_views_key(event: Event) -> BucketKey | None:
    if event.name != CATEGORY_VIEWED:
        return None
    category_id = _clean_str(event.properties.get("categoryId"))
    if category_id is None:
        return None
    return (day_key(event.timestamp), category_id)


def _search_queries_key(event: Event) -> BucketKey | None:
    if event.name != SEARCH_PERFORMED:
        return None
    query = normalize_query(event.properties.get("query"))
    if query is None:
        return None
    return (day_key(event.timestamp), query)


# Evaluation order is fixed; ingestion and pruning walk this tuple.
DEFINITIONS: tuple[AggregateDefinition, ...] = (
    AggregateDefinition(DAILY_VIEWS, _daily_views_key, _one, "Page views per day"),
    AggregateDefinition(ACTIVE_USERS, _active_users_key, _one, "Distinct actors per day"),
    AggregateDefinition(PRODUCT_VIEWS, _product_views_key, _one, "Product views per day"),
    AggregateDefinition(CART_EVENTS, _cart_events_key, _one, "Cart actions per day"),
    AggregateDefinition(CHECKOUT_FUNNEL, _checkout_funnel_key, _one, "Checkout steps per day"),
    AggregateDefinition(SALES, _sales_key, _sales_value, "Order revenue per day"),
    AggregateDefinition(COUPON_USAGE, _coupon_usage_key, _coupon_usage_value, "Discounts per coupon"),
    AggregateDefinition(CATEGORY_VIEWS, _category_views_key, _one, "Category views per day"),
    AggregateDefinition(SEARCH_QUERIES, _search_queries_key, _one, "Searches per query"),
)

DEFINITIONS_BY_NAME: dict[str, AggregateDefinition] = {d.name: d for d in DEFINITIONS}


def get_definition(name: str) -> AggregateDefinition:
    try:
        return DEFINITIONS_BY_NAME[name]
    except KeyError:
        raise ValueError(f"Unknown aggregate definition: {name}") from None
