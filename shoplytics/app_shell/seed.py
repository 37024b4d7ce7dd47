"""Demo traffic for local dashboards."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from shoplytics.components.analytics import AnalyticsIngestionService, AnalyticsStorePort
from shoplytics.core.entities import Actor

PRODUCTS = ["P100", "P101", "P102", "P103", "P104", "P105"]
CATEGORIES = ["shoes", "shirts", "bags", "hats"]
COUPONS = ["WELCOME10", "SUMMER", "VIP20"]
SEARCHES = ["running shoes", "linen shirt", "tote", "sale", "gift card"]
CHECKOUT_STEPS = ["shipping", "payment"]


def _visit(rng: random.Random) -> list[tuple[str, dict]]:
    """One shopper session, shaped like a storefront funnel."""
    product = rng.choice(PRODUCTS)
    events: list[tuple[str, dict]] = [("page_viewed", {"path": "/"})]
    if rng.random() < 0.4:
        events.append(("category_viewed", {"categoryId": rng.choice(CATEGORIES)}))
    if rng.random() < 0.3:
        events.append(
            ("search_performed", {"query": rng.choice(SEARCHES), "resultsCount": rng.randint(0, 40)})
        )
    events.append(("product_viewed", {"productId": product}))
    if rng.random() < 0.5:
        return events

    price = rng.choice([19.9, 49.0, 89.5, 120.0])
    quantity = rng.randint(1, 3)
    events.append(
        ("cart_item_added", {"productId": product, "quantity": quantity, "price": price})
    )
    if rng.random() < 0.4:
        return events

    total = round(price * quantity, 2)
    events.append(("checkout_started", {"itemCount": quantity, "totalValue": total}))
    for step in CHECKOUT_STEPS:
        if rng.random() < 0.2:
            return events
        events.append(("checkout_step_viewed", {"step": step}))

    if rng.random() < 0.3:
        code = rng.choice(COUPONS)
        success = rng.random() < 0.8
        discount = round(total * 0.1, 2) if success else 0
        events.append(
            ("coupon_applied", {"couponCode": code, "success": success, "discountAmount": discount})
        )
        total -= discount
    events.append(("order_completed", {"orderId": f"O{rng.randint(1000, 9999)}", "total": total}))
    return events


def seed_demo_events(
    store: AnalyticsStorePort,
    visits: int,
    now: datetime,
    days: int = 30,
    seed: int = 7,
) -> int:
    """Ingest `visits` sessions spread over the last `days` days. Returns events written."""
    rng = random.Random(seed)
    service = AnalyticsIngestionService(store=store)
    users = [f"user-{i}" for i in range(max(1, visits // 4))]
    written = 0

    for visit in range(visits):
        start = now - timedelta(days=rng.randint(0, days - 1), minutes=rng.randint(0, 1200))
        anonymous_id = f"anon-{visit}"
        user_id = rng.choice(users) if rng.random() < 0.35 else None
        actor = Actor(user_id=user_id, anonymous_id=anonymous_id)

        for offset, (name, properties) in enumerate(_visit(rng)):
            _, errors = service.ingest(
                actor, name, properties, timestamp=start + timedelta(seconds=30 * offset)
            )
            if not errors:
                written += 1
    return written
