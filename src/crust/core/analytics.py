"""Order-derived aggregate math.

Pure functions with no I/O. The aggregator loads state, calls into this
module, and persists the result.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from crust.core.models import (
    FavoriteCategory,
    MostOrderedItem,
    Order,
    OrderFrequency,
    OrderingBehavior,
    OrderItem,
    TimeOfDay,
)

BASELINE_RATING = 4.0

# (minimum sales_count, rating), highest threshold first
RATING_TIERS: tuple[tuple[int, float], ...] = (
    (200, 5.0),
    (100, 4.7),
    (50, 4.5),
    (10, 4.2),
)


def rating_for_sales(sales_count: int) -> float:
    """Rating tier for a cumulative sales count."""
    for threshold, rating in RATING_TIERS:
        if sales_count >= threshold:
            return rating
    return BASELINE_RATING


@dataclass(slots=True)
class ProductDelta:
    """Additive statistics change for one product."""

    product_id: str
    quantity: int
    revenue: Decimal


def group_line_items(items: Iterable[OrderItem]) -> list[ProductDelta]:
    """Sum quantity and line revenue per product, in first-seen order."""
    deltas: dict[str, ProductDelta] = {}
    for item in items:
        delta = deltas.get(item.product_id)
        if delta is None:
            deltas[item.product_id] = ProductDelta(
                product_id=item.product_id,
                quantity=item.quantity,
                revenue=item.line_total,
            )
        else:
            delta.quantity += item.quantity
            delta.revenue += item.line_total
    return list(deltas.values())


def incremental_mean(previous_mean: float, new_count: int, sample: float) -> float:
    """Running mean after adding one sample, where new_count includes it."""
    if new_count <= 0:
        return 0.0
    return ((previous_mean * (new_count - 1)) + sample) / new_count


def merge_most_ordered(
    current: list[MostOrderedItem],
    items: Iterable[OrderItem],
    ordered_at: datetime,
    limit: int = 10,
) -> list[MostOrderedItem]:
    """Merge an order's line items into the most-ordered list.

    Entries are matched by product id. The result is sorted by count
    descending and truncated to ``limit``; ties keep their previous relative
    order, with newly inserted products after existing ones.
    """
    merged = [entry.model_copy() for entry in current]
    by_product = {entry.product_id: entry for entry in merged}

    for item in items:
        entry = by_product.get(item.product_id)
        if entry is None:
            entry = MostOrderedItem(
                product_id=item.product_id,
                count=item.quantity,
                total_spent=item.line_total,
                last_ordered=ordered_at,
            )
            merged.append(entry)
            by_product[item.product_id] = entry
        else:
            entry.count += item.quantity
            entry.total_spent += item.line_total
            entry.last_ordered = ordered_at

    merged.sort(key=lambda entry: entry.count, reverse=True)
    return merged[:limit]


def merge_favorite_categories(
    current: list[FavoriteCategory],
    items: Iterable[OrderItem],
    limit: int = 4,
) -> list[FavoriteCategory]:
    """Add each line's quantity to its category count and keep the top ``limit``."""
    merged = [entry.model_copy() for entry in current]
    by_category = {entry.category: entry for entry in merged}

    for item in items:
        entry = by_category.get(item.category)
        if entry is None:
            entry = FavoriteCategory(category=item.category, count=item.quantity)
            merged.append(entry)
            by_category[item.category] = entry
        else:
            entry.count += item.quantity

    merged.sort(key=lambda entry: entry.count, reverse=True)
    return merged[:limit]


def classify_frequency(
    total_orders: int,
    account_created_at: datetime,
    now: datetime,
    regular_min: float = 2.0,
    frequent_min: float = 8.0,
) -> OrderFrequency:
    """Classify orders-per-month against the configured thresholds.

    Account age is rounded up to whole days with a floor of one day, so a
    customer created today is measured over a single day.
    """
    age_seconds = (now - account_created_at).total_seconds()
    age_days = max(1, math.ceil(age_seconds / 86400))
    orders_per_month = (total_orders / age_days) * 30

    if orders_per_month < regular_min:
        return OrderFrequency.OCCASIONAL
    if orders_per_month < frequent_min:
        return OrderFrequency.REGULAR
    return OrderFrequency.FREQUENT


def classify_order_time(ordered_at: datetime, timezone: str = "UTC") -> TimeOfDay:
    """Bucket an order timestamp by the business's local hour."""
    if ordered_at.tzinfo is None:
        ordered_at = ordered_at.replace(tzinfo=UTC)
    hour = ordered_at.astimezone(ZoneInfo(timezone)).hour

    if 6 <= hour < 12:
        return TimeOfDay.MORNING
    if 12 <= hour < 17:
        return TimeOfDay.AFTERNOON
    if 17 <= hour < 21:
        return TimeOfDay.EVENING
    return TimeOfDay.NIGHT


@dataclass(frozen=True, slots=True)
class BehaviorPolicy:
    """Tunable constants for customer behavior aggregation."""

    most_ordered_limit: int = 10
    favorite_categories_limit: int = 4
    frequency_regular_min: float = 2.0
    frequency_frequent_min: float = 8.0
    timezone: str = "UTC"


def apply_order_to_behavior(
    behavior: OrderingBehavior,
    order: Order,
    account_created_at: datetime,
    now: datetime,
    policy: BehaviorPolicy | None = None,
) -> OrderingBehavior:
    """Return a new OrderingBehavior with one delivered order folded in.

    Time-based fields describe when the customer ordered, not when the order
    was delivered or aggregated: ``preferred_order_time``, ``last_order_date``
    and each most-ordered entry's ``last_ordered`` come from
    ``order.created_at``. ``now`` is used only for the account age behind
    ``order_frequency``, so a backfill of old orders reproduces their original
    placement times.
    """
    policy = policy or BehaviorPolicy()

    total_orders = behavior.total_orders + 1
    total_spent = behavior.total_spent + order.total_amount
    average_order_value = total_spent / total_orders

    return OrderingBehavior(
        total_orders=total_orders,
        total_spent=total_spent,
        average_order_value=average_order_value,
        avg_items_per_order=incremental_mean(
            behavior.avg_items_per_order, total_orders, float(order.item_count)
        ),
        most_ordered_items=merge_most_ordered(
            behavior.most_ordered_items,
            order.items,
            ordered_at=order.created_at,
            limit=policy.most_ordered_limit,
        ),
        favorite_categories=merge_favorite_categories(
            behavior.favorite_categories,
            order.items,
            limit=policy.favorite_categories_limit,
        ),
        order_frequency=classify_frequency(
            total_orders,
            account_created_at,
            now,
            regular_min=policy.frequency_regular_min,
            frequent_min=policy.frequency_frequent_min,
        ),
        preferred_order_time=classify_order_time(order.created_at, policy.timezone),
        last_order_date=order.created_at,
    )
