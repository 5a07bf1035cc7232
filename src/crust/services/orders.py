"""Order lifecycle service.

Placing, paying and advancing orders all change dashboard figures, so each
write invalidates the dashboard after it commits. Entering ``delivered``
hands the order to post-order aggregation without waiting for it.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

from crust.cache.policy import EntityClass
from crust.cache.read_through import ReadThroughStore
from crust.core.errors import BadRequestError, NotFoundError
from crust.core.models import (
    AppliedCoupon,
    Order,
    OrderItem,
    OrderLine,
    OrderStatus,
    Payment,
    PaymentStatus,
)
from crust.events.publisher import RealtimePublisher
from crust.events.schemas import RealtimeEvent, RealtimeEventType
from crust.persistence.repositories import OrderRepository, PaymentRepository
from crust.services.activity import ActivityRecorder
from crust.services.aggregation import PostOrderAggregator
from crust.services.coupons import CouponService
from crust.services.products import ProductService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def generate_order_number(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"ORD-{now:%Y%m%d}-{uuid4().hex[:6].upper()}"


class OrderService:
    def __init__(
        self,
        orders: OrderRepository,
        payments: PaymentRepository,
        products: ProductService,
        coupons: CouponService,
        store: ReadThroughStore,
        aggregator: PostOrderAggregator,
        publisher: RealtimePublisher | None = None,
        activity: ActivityRecorder | None = None,
        tax_rate: Decimal = Decimal("0"),
    ):
        self.orders = orders
        self.payments = payments
        self.products = products
        self.coupons = coupons
        self.store = store
        self.aggregator = aggregator
        self.publisher = publisher
        self.activity = activity
        self.tax_rate = tax_rate

    async def get(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def place(
        self,
        customer_id: str,
        lines: list[OrderLine],
        delivery_fee: Decimal = Decimal("0"),
        coupon_code: str | None = None,
    ) -> Order:
        """Price the lines from the catalogue, apply a coupon and persist the order.

        A coupon use is counted before the order is written and given back if
        the write fails.
        """
        if not lines:
            raise BadRequestError("An order needs at least one item")

        items = []
        for line in lines:
            product = await self.products.get(line.product_id)
            if not product.is_available:
                raise BadRequestError(f"{product.name} is not available")
            items.append(
                OrderItem(
                    product_id=product.id,
                    name=product.name,
                    category=product.category,
                    quantity=line.quantity,
                    unit_price=product.price,
                    subtotal=product.price * line.quantity,
                )
            )

        subtotal = sum((item.line_total for item in items), Decimal("0"))
        discount = Decimal("0")
        applied = None
        if coupon_code:
            applied = await self.coupons.validate_and_apply(coupon_code, subtotal)
            discount = applied.discount
            coupon_code = applied.code

        tax = ((subtotal - discount) * self.tax_rate).quantize(CENT)
        total = subtotal - discount + tax + delivery_fee

        order = Order(
            order_number=generate_order_number(),
            customer_id=customer_id,
            items=items,
            subtotal=subtotal,
            tax=tax,
            delivery_fee=delivery_fee,
            discount=discount,
            total_amount=total,
            coupon_code=coupon_code,
        )
        try:
            await self.store.write(EntityClass.DASHBOARD, None, lambda: self.orders.create(order))
        except Exception:
            if applied is not None:
                await self._release_coupon(applied, order)
            raise

        logger.info(f"Placed order {order.order_number} for {total}")
        await self._publish(RealtimeEventType.ORDER_CREATED, order)
        if self.activity:
            await self.activity.record(
                "order_created",
                f"New order {order.order_number} placed",
                user_id=customer_id,
                order_id=order.id,
            )
        return order

    async def record_payment(
        self,
        order_id: str,
        amount: Decimal,
        method: str = "cash",
        status: PaymentStatus = PaymentStatus.COMPLETED,
    ) -> Payment:
        order = await self.get(order_id)
        payment = Payment(order_id=order.id, amount=amount, method=method, status=status)
        await self.store.write(EntityClass.DASHBOARD, None, lambda: self.payments.create(payment))
        if self.activity:
            await self.activity.record(
                "payment_recorded",
                f"Payment of {amount} recorded for order {order.order_number}",
                user_id=order.customer_id,
                order_id=order.id,
            )
        return payment

    async def advance(self, order_id: str, status: OrderStatus) -> Order:
        """Move an order along its lifecycle.

        Raises NotFoundError for an unknown order and BadRequestError for a
        transition the lifecycle does not allow.
        """

        async def mutate() -> tuple[Order, OrderStatus]:
            result = await self.orders.transition(order_id, status)
            if result is None:
                raise NotFoundError("Order", order_id)
            return result

        order, previous = await self.store.write(EntityClass.DASHBOARD, None, mutate)
        logger.info(f"Order {order.order_number} moved from {previous.value} to {status.value}")

        if status == OrderStatus.DELIVERED:
            if not self.aggregator.on_order_delivered(order):
                logger.error(f"Aggregation for order {order.order_number} was dropped")

        await self._publish(RealtimeEventType.ORDER_STATUS_CHANGED, order, previous=previous.value)
        if self.activity:
            await self.activity.record(
                "order_status",
                f"Order {order.order_number} is now {status.value}",
                user_id=order.customer_id,
                order_id=order.id,
                previous=previous.value,
            )
        return order

    async def cancel(self, order_id: str) -> Order:
        return await self.advance(order_id, OrderStatus.CANCELLED)

    async def _release_coupon(self, applied: AppliedCoupon, order: Order) -> None:
        try:
            await self.coupons.release(applied)
        except Exception:
            logger.exception(
                f"Coupon {applied.code} use was not released for unsaved order {order.order_number}"
            )

    async def _publish(self, event_type: RealtimeEventType, order: Order, **extra: str) -> None:
        if self.publisher is None:
            return
        await self.publisher.publish(
            RealtimeEvent(
                event_type=event_type,
                payload={
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "status": order.status.value,
                    **extra,
                },
                audience=f"customer:{order.customer_id}",
            )
        )
