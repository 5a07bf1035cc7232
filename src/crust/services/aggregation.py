"""Post-order aggregation.

When an order is delivered, two slow-moving aggregates are updated off the
request path:

1. Product statistics: sales_count and total_revenue are incremented for
   every product on the order in one batched update, then the rating tier of
   exactly those products is recomputed in a second batched update.
2. Customer behavior: the ordering customer's running totals, averages,
   top-N lists and classifications are folded forward by one order.

The two steps commit separately and are isolated from each other: a failure
in one is logged and recorded for replay, and never prevents the other.
Nothing raised inside aggregation reaches the code that delivered the order.

Duplicate delivered triggers are absorbed by an idempotency marker per order
id. When the cache holding the marker is unreachable, aggregation proceeds
and a duplicate trigger in that window is counted twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import orjson

from crust.cache.keys import CacheKeys
from crust.cache.policy import EntityClass
from crust.cache.read_through import ReadThroughStore
from crust.cache.redis import KeyValueCache
from crust.core.analytics import BehaviorPolicy, apply_order_to_behavior, group_line_items
from crust.core.errors import AuthoritativeStoreError
from crust.core.models import Customer, CustomerRole, Order, OrderingBehavior
from crust.jobs.pool import BackgroundTaskPool
from crust.observability.logging import LogContext
from crust.observability.metrics import get_metrics, record_aggregation_step
from crust.persistence.repositories import CustomerRepository, OrderRepository, ProductRepository

logger = logging.getLogger(__name__)

MARKER_VERSION = 1


class AggregationStep(str, Enum):
    PRODUCTS = "products"
    CUSTOMER = "customer"


ALL_STEPS = frozenset(AggregationStep)


class StepOutcome(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class AggregationResult:
    order_id: str
    outcomes: dict[AggregationStep, StepOutcome] = field(default_factory=dict)
    skipped_products: list[str] = field(default_factory=list)
    duplicate: bool = False

    @property
    def failed_steps(self) -> list[AggregationStep]:
        return [step for step, outcome in self.outcomes.items() if outcome == StepOutcome.FAILED]

    @property
    def ok(self) -> bool:
        return not self.duplicate and not self.failed_steps


@dataclass
class BatchSummary:
    processed: int = 0
    duplicates: int = 0
    failed: int = 0


@dataclass(frozen=True, slots=True)
class AggregatorConfig:
    behavior: BehaviorPolicy = BehaviorPolicy()
    dedupe_ttl: int = 86400 * 7
    dlq_max: int = 1000
    chunk_size: int = 50


class PostOrderAggregator:
    """Updates product statistics and customer behavior after delivery."""

    def __init__(
        self,
        products: ProductRepository,
        customers: CustomerRepository,
        orders: OrderRepository,
        cache: KeyValueCache,
        store: ReadThroughStore,
        pool: BackgroundTaskPool,
        config: AggregatorConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.products = products
        self.customers = customers
        self.orders = orders
        self.cache = cache
        self.store = store
        self.pool = pool
        self.config = config or AggregatorConfig()
        self.clock = clock or (lambda: datetime.now(UTC))

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def on_order_delivered(self, order: Order) -> bool:
        """Schedule aggregation for a delivered order and return immediately.

        Returns False if the background queue was full and the work dropped.
        """
        return self.pool.submit("aggregate-order", lambda: self.process(order), ref=order.id)

    async def process(
        self,
        order: Order,
        steps: Iterable[AggregationStep] = ALL_STEPS,
        dedupe: bool = True,
    ) -> AggregationResult:
        """Aggregate one delivered order. Never raises."""
        steps = frozenset(steps)
        result = AggregationResult(order_id=order.id)

        with LogContext(order_id=order.id, customer_id=order.customer_id):
            try:
                if dedupe and not await self._claim(order):
                    result.duplicate = True
                    return result

                await asyncio.gather(
                    self._product_step(order, result, steps),
                    self._customer_step(order, result, steps),
                )

                if result.outcomes.get(AggregationStep.PRODUCTS) == StepOutcome.OK:
                    await self._invalidate(order, result)

                if result.failed_steps:
                    await self._dead_letter(order, result.failed_steps)
                else:
                    logger.info(f"Aggregated order {order.order_number}")
            except Exception:
                logger.exception(f"Post-order aggregation failed for order {order.order_number}")

        return result

    async def process_batch(self, orders: Sequence[Order], dedupe: bool = True) -> BatchSummary:
        """Aggregate many delivered orders in concurrent chunks."""
        summary = BatchSummary()
        size = max(1, self.config.chunk_size)
        for start in range(0, len(orders), size):
            chunk = orders[start : start + size]
            results = await asyncio.gather(*(self.process(order, dedupe=dedupe) for order in chunk))
            for result in results:
                if result.duplicate:
                    summary.duplicates += 1
                elif result.failed_steps:
                    summary.failed += 1
                else:
                    summary.processed += 1
            logger.info(f"Aggregated chunk of {len(chunk)} orders ({start + len(chunk)}/{len(orders)})")
        return summary

    async def backfill(self, dedupe: bool = True) -> BatchSummary:
        """Walk every delivered order in the store and aggregate it."""
        total = BatchSummary()
        offset = 0
        while True:
            page = await self.orders.list_delivered(limit=self.config.chunk_size, offset=offset)
            if not page:
                break
            summary = await self.process_batch(page, dedupe=dedupe)
            total.processed += summary.processed
            total.duplicates += summary.duplicates
            total.failed += summary.failed
            offset += len(page)
        return total

    async def retry_failed(self, limit: int = 100) -> BatchSummary:
        """Replay recorded step failures, oldest first.

        Only the steps that failed are re-run, and the idempotency marker is
        not consulted since the order has already claimed it. Each call looks
        at most at the records present when it started: a replay that fails
        again is recorded afresh at the head of the list and waits for the
        next call. A record whose order cannot be loaded is put back.
        """
        summary = BatchSummary()
        key = CacheKeys.aggregation_failures()
        pending = min(limit, await self.cache.list_length(key))
        for _ in range(pending):
            raw = await self.cache.pop_record(key)
            if raw is None:
                break
            try:
                record = orjson.loads(raw)
                order_id = record["order_id"]
                steps = [AggregationStep(step) for step in record["steps"]]
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"Discarding unreadable aggregation failure record: {e}")
                summary.failed += 1
                continue

            try:
                order = await self.orders.get(order_id)
            except AuthoritativeStoreError as e:
                logger.error(f"Could not load order {order_id} for retry, keeping it recorded: {e.text}")
                await self.cache.push_record(key, raw, self.config.dlq_max)
                summary.failed += 1
                continue
            if order is None:
                logger.warning(f"Dropping failed aggregation for unknown order {order_id}")
                continue

            result = await self.process(order, steps=steps, dedupe=False)
            if result.failed_steps:
                summary.failed += 1
            else:
                summary.processed += 1
        return summary

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _product_step(
        self, order: Order, result: AggregationResult, steps: frozenset[AggregationStep]
    ) -> None:
        if AggregationStep.PRODUCTS not in steps:
            return
        try:
            deltas = group_line_items(order.items)
            existing = await self.products.existing_ids(d.product_id for d in deltas)

            applied = []
            for delta in deltas:
                if delta.product_id in existing:
                    applied.append(delta)
                else:
                    result.skipped_products.append(delta.product_id)
                    get_metrics().aggregation_skipped_items_total.inc()
                    logger.warning(
                        f"Skipping line item for missing product {delta.product_id} "
                        f"on order {order.order_number}"
                    )

            if applied:
                await self.products.apply_sales(applied)
                await self.products.refresh_ratings(d.product_id for d in applied)

            self._set_outcome(result, AggregationStep.PRODUCTS, StepOutcome.OK)
        except Exception:
            self._set_outcome(result, AggregationStep.PRODUCTS, StepOutcome.FAILED)
            logger.exception(f"Product statistics update failed for order {order.order_number}")

    async def _customer_step(
        self, order: Order, result: AggregationResult, steps: frozenset[AggregationStep]
    ) -> None:
        if AggregationStep.CUSTOMER not in steps:
            return
        now = self.clock()
        policy = self.config.behavior

        def fold(customer: Customer) -> OrderingBehavior | None:
            if customer.role != CustomerRole.CUSTOMER:
                return None
            return apply_order_to_behavior(
                customer.ordering_behavior,
                order,
                account_created_at=customer.created_at,
                now=now,
                policy=policy,
            )

        try:
            customer = await self.customers.update_behavior(order.customer_id, fold)
            if customer is None:
                logger.warning(f"Customer {order.customer_id} not found for order {order.order_number}")
                self._set_outcome(result, AggregationStep.CUSTOMER, StepOutcome.SKIPPED)
            elif customer.role != CustomerRole.CUSTOMER:
                logger.info(f"Not tracking ordering behavior for {customer.role.value} account")
                self._set_outcome(result, AggregationStep.CUSTOMER, StepOutcome.SKIPPED)
            else:
                self._set_outcome(result, AggregationStep.CUSTOMER, StepOutcome.OK)
        except Exception:
            self._set_outcome(result, AggregationStep.CUSTOMER, StepOutcome.FAILED)
            logger.exception(f"Customer behavior update failed for order {order.order_number}")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _set_outcome(result: AggregationResult, step: AggregationStep, outcome: StepOutcome) -> None:
        result.outcomes[step] = outcome
        record_aggregation_step(step.value, outcome.value)

    async def _claim(self, order: Order) -> bool:
        marker = CacheKeys.aggregation_marker(order.id, MARKER_VERSION)
        claimed = await self.cache.set_if_absent(marker, b"1", self.config.dedupe_ttl)
        if claimed is None:
            logger.warning(
                f"Could not check aggregation marker for order {order.order_number}, proceeding"
            )
            return True
        if not claimed:
            logger.warning(f"Order {order.order_number} already aggregated, ignoring duplicate trigger")
            return False
        return True

    async def _invalidate(self, order: Order, result: AggregationResult) -> None:
        touched = sorted({item.product_id for item in order.items} - set(result.skipped_products))
        await self.store.invalidate_items(EntityClass.PRODUCT, touched)
        await self.store.invalidate(EntityClass.DASHBOARD)

    async def _dead_letter(self, order: Order, steps: list[AggregationStep]) -> None:
        record = orjson.dumps(
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "steps": [step.value for step in steps],
                "failed_at": self.clock().isoformat(),
            }
        )
        stored = await self.cache.push_record(
            CacheKeys.aggregation_failures(), record, self.config.dlq_max
        )
        failed = ", ".join(step.value for step in steps)
        if stored:
            logger.error(f"Recorded failed aggregation steps ({failed}) for order {order.order_number}")
        else:
            logger.error(
                f"Failed aggregation steps ({failed}) for order {order.order_number} "
                f"could not be recorded for retry"
            )
