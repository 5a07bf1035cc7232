"""Tests for the order lifecycle service."""

from __future__ import annotations

import logging
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from crust.cache.keys import CacheKeys
from crust.cache.read_through import ReadThroughStore
from crust.core.errors import AuthoritativeStoreError, BadRequestError, NotFoundError
from crust.core.models import (
    AppliedCoupon,
    DiscountType,
    Order,
    OrderItem,
    OrderLine,
    OrderStatus,
    PaymentStatus,
    Product,
)
from crust.events.publisher import InMemoryPublisher
from crust.events.schemas import RealtimeEventType
from crust.services.orders import OrderService, generate_order_number
from tests.fakes import FakeRedis


@pytest.fixture
def catalogue() -> dict[str, Product]:
    return {
        "p-1": Product(id="p-1", name="Margherita", price=Decimal("10.00")),
        "p-2": Product(id="p-2", name="Cola", category="Drinks", price=Decimal("2.50")),
        "p-3": Product(id="p-3", name="Seasonal", price=Decimal("12.00"), is_available=False),
    }


@pytest.fixture
def products(catalogue: dict[str, Product]) -> AsyncMock:
    service = AsyncMock()
    service.get = AsyncMock(side_effect=lambda pid: catalogue[pid])
    return service


@pytest.fixture
def orders_repo() -> AsyncMock:
    repo = AsyncMock()
    repo.create = AsyncMock(side_effect=lambda order: order)
    return repo


@pytest.fixture
def aggregator() -> MagicMock:
    agg = MagicMock()
    agg.on_order_delivered = MagicMock(return_value=True)
    return agg


@pytest.fixture
def publisher() -> InMemoryPublisher:
    return InMemoryPublisher()


@pytest.fixture
def coupons() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def service(
    orders_repo: AsyncMock,
    products: AsyncMock,
    coupons: AsyncMock,
    store: ReadThroughStore,
    aggregator: MagicMock,
    publisher: InMemoryPublisher,
) -> OrderService:
    payments = AsyncMock()
    payments.create = AsyncMock(side_effect=lambda payment: payment)
    return OrderService(
        orders=orders_repo,
        payments=payments,
        products=products,
        coupons=coupons,
        store=store,
        aggregator=aggregator,
        publisher=publisher,
        activity=AsyncMock(),
    )


def delivered_order() -> Order:
    return Order(
        id="o-1",
        order_number="ORD-20260101-ABC123",
        customer_id="c-1",
        items=[OrderItem(product_id="p-1", name="Margherita", category="Pizza", quantity=1, unit_price=Decimal("10"))],
        subtotal=Decimal("10"),
        total_amount=Decimal("10"),
        status=OrderStatus.DELIVERED,
    )


class TestPlace:
    @pytest.mark.asyncio
    async def test_prices_from_catalogue(self, service: OrderService, orders_repo: AsyncMock) -> None:
        order = await service.place(
            "c-1",
            [OrderLine(product_id="p-1", quantity=2), OrderLine(product_id="p-2", quantity=1)],
            delivery_fee=Decimal("3.00"),
        )

        assert order.subtotal == Decimal("22.50")
        assert order.total_amount == Decimal("25.50")
        assert [i.category for i in order.items] == ["Pizza", "Drinks"]
        orders_repo.create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_applies_coupon(self, service: OrderService, coupons: AsyncMock) -> None:
        coupons.validate_and_apply = AsyncMock(
            return_value=AppliedCoupon(
                code="SAVE10",
                discount_type=DiscountType.PERCENTAGE,
                discount_value=Decimal("10"),
                discount=Decimal("2.00"),
                final_amount=Decimal("18.00"),
            )
        )

        order = await service.place("c-1", [OrderLine(product_id="p-1", quantity=2)], coupon_code="save10")

        coupons.validate_and_apply.assert_awaited_once_with("save10", Decimal("20.00"))
        assert order.discount == Decimal("2.00")
        assert order.total_amount == Decimal("18.00")
        assert order.coupon_code == "SAVE10"
        coupons.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_create_releases_coupon(
        self, service: OrderService, coupons: AsyncMock, orders_repo: AsyncMock
    ) -> None:
        applied = AppliedCoupon(
            code="SAVE10",
            coupon_id="cp-1",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            discount=Decimal("2.00"),
            final_amount=Decimal("18.00"),
        )
        coupons.validate_and_apply = AsyncMock(return_value=applied)
        orders_repo.create = AsyncMock(side_effect=AuthoritativeStoreError("database operation failed"))

        with pytest.raises(AuthoritativeStoreError):
            await service.place("c-1", [OrderLine(product_id="p-1", quantity=2)], coupon_code="save10")

        coupons.release.assert_awaited_once_with(applied)

    @pytest.mark.asyncio
    async def test_release_failure_keeps_original_error(
        self,
        service: OrderService,
        coupons: AsyncMock,
        orders_repo: AsyncMock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        coupons.validate_and_apply = AsyncMock(
            return_value=AppliedCoupon(
                code="SAVE10",
                coupon_id="cp-1",
                discount_type=DiscountType.FLAT,
                discount_value=Decimal("5"),
                discount=Decimal("5.00"),
                final_amount=Decimal("15.00"),
            )
        )
        coupons.release = AsyncMock(side_effect=AuthoritativeStoreError("still down"))
        orders_repo.create = AsyncMock(side_effect=AuthoritativeStoreError("database operation failed"))

        with (
            caplog.at_level(logging.ERROR, logger="crust.services.orders"),
            pytest.raises(AuthoritativeStoreError, match="database operation failed"),
        ):
            await service.place("c-1", [OrderLine(product_id="p-1", quantity=2)], coupon_code="save10")

        assert "Coupon SAVE10 use was not released" in caplog.text

    @pytest.mark.asyncio
    async def test_failed_create_without_coupon_releases_nothing(
        self, service: OrderService, coupons: AsyncMock, orders_repo: AsyncMock
    ) -> None:
        orders_repo.create = AsyncMock(side_effect=AuthoritativeStoreError("database operation failed"))

        with pytest.raises(AuthoritativeStoreError):
            await service.place("c-1", [OrderLine(product_id="p-1", quantity=1)])

        coupons.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unavailable_product_rejected(self, service: OrderService, orders_repo: AsyncMock) -> None:
        with pytest.raises(BadRequestError, match="Seasonal is not available"):
            await service.place("c-1", [OrderLine(product_id="p-3", quantity=1)])

        orders_repo.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_order_rejected(self, service: OrderService) -> None:
        with pytest.raises(BadRequestError):
            await service.place("c-1", [])

    @pytest.mark.asyncio
    async def test_invalidates_dashboard_and_publishes(
        self, service: OrderService, fake_redis: FakeRedis, publisher: InMemoryPublisher
    ) -> None:
        fake_redis._do_set(CacheKeys.dashboard_stats_today(), b"{}")

        order = await service.place("c-1", [OrderLine(product_id="p-1", quantity=1)])

        assert CacheKeys.dashboard_stats_today() not in fake_redis.data
        event = publisher.events[-1]
        assert event.event_type == RealtimeEventType.ORDER_CREATED
        assert event.audience == "customer:c-1"
        assert event.payload["order_id"] == order.id


class TestAdvance:
    @pytest.mark.asyncio
    async def test_delivery_schedules_aggregation(
        self, service: OrderService, orders_repo: AsyncMock, aggregator: MagicMock
    ) -> None:
        order = delivered_order()
        orders_repo.transition = AsyncMock(return_value=(order, OrderStatus.OUT_FOR_DELIVERY))

        result = await service.advance("o-1", OrderStatus.DELIVERED)

        assert result is order
        aggregator.on_order_delivered.assert_called_once_with(order)

    @pytest.mark.asyncio
    async def test_other_transitions_do_not_aggregate(
        self, service: OrderService, orders_repo: AsyncMock, aggregator: MagicMock, publisher: InMemoryPublisher
    ) -> None:
        order = delivered_order().model_copy(update={"status": OrderStatus.CONFIRMED})
        orders_repo.transition = AsyncMock(return_value=(order, OrderStatus.PENDING))

        await service.advance("o-1", OrderStatus.CONFIRMED)

        aggregator.on_order_delivered.assert_not_called()
        assert publisher.events[-1].payload["previous"] == "pending"

    @pytest.mark.asyncio
    async def test_dropped_aggregation_does_not_fail_delivery(
        self, service: OrderService, orders_repo: AsyncMock, aggregator: MagicMock
    ) -> None:
        aggregator.on_order_delivered.return_value = False
        orders_repo.transition = AsyncMock(return_value=(delivered_order(), OrderStatus.OUT_FOR_DELIVERY))

        result = await service.advance("o-1", OrderStatus.DELIVERED)

        assert result.status == OrderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_unknown_order(self, service: OrderService, orders_repo: AsyncMock) -> None:
        orders_repo.transition = AsyncMock(return_value=None)

        with pytest.raises(NotFoundError):
            await service.advance("nope", OrderStatus.CONFIRMED)

    @pytest.mark.asyncio
    async def test_illegal_transition(self, service: OrderService, orders_repo: AsyncMock) -> None:
        orders_repo.transition = AsyncMock(side_effect=BadRequestError("Cannot move order from delivered to pending"))

        with pytest.raises(BadRequestError):
            await service.advance("o-1", OrderStatus.PENDING)

    @pytest.mark.asyncio
    async def test_cancel(self, service: OrderService, orders_repo: AsyncMock) -> None:
        cancelled = delivered_order().model_copy(update={"status": OrderStatus.CANCELLED})
        orders_repo.transition = AsyncMock(return_value=(cancelled, OrderStatus.PENDING))

        await service.cancel("o-1")

        orders_repo.transition.assert_awaited_once_with("o-1", OrderStatus.CANCELLED)


class TestPayments:
    @pytest.mark.asyncio
    async def test_record_payment(self, service: OrderService, orders_repo: AsyncMock) -> None:
        orders_repo.get = AsyncMock(return_value=delivered_order())

        payment = await service.record_payment("o-1", Decimal("10"), method="card")

        assert payment.order_id == "o-1"
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.method == "card"


def test_order_number_format() -> None:
    number = generate_order_number()
    prefix, day, suffix = number.split("-")
    assert prefix == "ORD"
    assert len(day) == 8
    assert len(suffix) == 6
