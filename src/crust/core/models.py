"""Domain models for crust.

All models use Pydantic v2. Money is carried as Decimal and serialized as a
string in JSON mode, so cached values and JSONB documents round-trip exactly.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _new_id() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class DomainModel(BaseModel):
    """Base model for all crust domain models."""

    model_config = {
        "extra": "forbid",
        "populate_by_name": True,
        "validate_default": True,
    }


# -----------------------------------------------------------------------------
# Business singleton
# -----------------------------------------------------------------------------

BUSINESS_SINGLETON_ID = "default"


class BankDetails(DomainModel):
    account_holder: str | None = None
    account_number: str | None = None
    ifsc: str | None = None
    bank_name: str | None = None


class Business(DomainModel):
    """Restaurant-level settings. Exactly one record exists."""

    id: str = BUSINESS_SINGLETON_ID
    name: str
    email: str
    phone: str
    address: str
    is_open: bool = False
    bank_details: BankDetails | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class BusinessUpdate(DomainModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    is_open: bool | None = None
    bank_details: BankDetails | None = None


# -----------------------------------------------------------------------------
# Products
# -----------------------------------------------------------------------------


class Product(DomainModel):
    """Menu item with its order-derived statistics.

    sales_count, total_revenue and rating are only mutated by post-order
    aggregation.
    """

    id: str = Field(default_factory=_new_id)
    name: str
    description: str | None = None
    price: Decimal = Field(ge=0)
    category: str = "Pizza"
    image_url: str | None = None
    is_available: bool = True
    sales_count: int = Field(default=0, ge=0)
    total_revenue: Decimal = Field(default=Decimal("0"), ge=0)
    rating: float = Field(default=4.0, ge=4.0, le=5.0)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ProductCreate(DomainModel):
    name: str
    description: str | None = None
    price: Decimal = Field(ge=0)
    category: str = "Pizza"
    image_url: str | None = None
    is_available: bool = True


class ProductUpdate(DomainModel):
    name: str | None = None
    description: str | None = None
    price: Decimal | None = Field(default=None, ge=0)
    category: str | None = None
    image_url: str | None = None
    is_available: bool | None = None


class ProductFilter(DomainModel):
    """Filter for product listings; its signature names the list cache key."""

    category: str | None = None
    available_only: bool = False

    def signature(self) -> str:
        parts = []
        if self.category:
            parts.append(f"category={self.category}")
        if self.available_only:
            parts.append("available")
        return "&".join(parts) or "all"


# -----------------------------------------------------------------------------
# Coupons
# -----------------------------------------------------------------------------


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FLAT = "flat"


class Coupon(DomainModel):
    id: str = Field(default_factory=_new_id)
    code: str
    description: str | None = None
    discount_type: DiscountType
    discount_value: Decimal = Field(ge=0)
    min_order_amount: Decimal = Field(default=Decimal("0"), ge=0)
    max_uses: int | None = None
    used_count: int = Field(default=0, ge=0)
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @field_validator("code")
    @classmethod
    def _upper_code(cls, value: str) -> str:
        return value.strip().upper()

    def is_valid(self, now: datetime | None = None) -> bool:
        """Active and inside its date window."""
        now = now or _now()
        if not self.is_active:
            return False
        if self.start_date is not None and now < self.start_date:
            return False
        if self.end_date is not None and now > self.end_date:
            return False
        return True

    def calculate_discount(self, amount: Decimal) -> Decimal:
        """Discount for an order amount, never more than the amount itself."""
        if self.discount_type == DiscountType.PERCENTAGE:
            discount = amount * self.discount_value / Decimal("100")
        else:
            discount = self.discount_value
        return min(discount, amount).quantize(Decimal("0.01"))


class CouponCreate(DomainModel):
    code: str
    description: str | None = None
    discount_type: DiscountType
    discount_value: Decimal = Field(ge=0)
    min_order_amount: Decimal = Field(default=Decimal("0"), ge=0)
    max_uses: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _upper_code(cls, value: str) -> str:
        return value.strip().upper()


class CouponUpdate(DomainModel):
    code: str | None = None
    description: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(default=None, ge=0)
    min_order_amount: Decimal | None = Field(default=None, ge=0)
    max_uses: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool | None = None

    @field_validator("code")
    @classmethod
    def _upper_code(cls, value: str | None) -> str | None:
        return value.strip().upper() if value is not None else None


class AppliedCoupon(DomainModel):
    code: str
    coupon_id: str | None = None
    discount_type: DiscountType
    discount_value: Decimal
    discount: Decimal
    final_amount: Decimal


# -----------------------------------------------------------------------------
# Customers
# -----------------------------------------------------------------------------


class CustomerRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    DELIVERY = "delivery"


class OrderFrequency(str, Enum):
    OCCASIONAL = "occasional"
    REGULAR = "regular"
    FREQUENT = "frequent"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class MostOrderedItem(DomainModel):
    product_id: str
    count: int = Field(ge=0)
    total_spent: Decimal = Field(default=Decimal("0"), ge=0)
    last_ordered: datetime


class FavoriteCategory(DomainModel):
    category: str
    count: int = Field(ge=0)


class OrderingBehavior(DomainModel):
    """Order-derived aggregates kept on the customer record."""

    total_orders: int = Field(default=0, ge=0)
    total_spent: Decimal = Field(default=Decimal("0"), ge=0)
    average_order_value: Decimal = Field(default=Decimal("0"), ge=0)
    avg_items_per_order: float = Field(default=0.0, ge=0)
    most_ordered_items: list[MostOrderedItem] = Field(default_factory=list)
    favorite_categories: list[FavoriteCategory] = Field(default_factory=list)
    order_frequency: OrderFrequency = OrderFrequency.OCCASIONAL
    preferred_order_time: TimeOfDay | None = None
    last_order_date: datetime | None = None


class Customer(DomainModel):
    id: str = Field(default_factory=_new_id)
    name: str
    email: str
    role: CustomerRole = CustomerRole.CUSTOMER
    is_active: bool = True
    ordering_behavior: OrderingBehavior = Field(default_factory=OrderingBehavior)
    created_at: datetime = Field(default_factory=_now)


# -----------------------------------------------------------------------------
# Orders and payments
# -----------------------------------------------------------------------------


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ACTIVE_ORDER_STATUSES = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.OUT_FOR_DELIVERY,
)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class OrderItem(DomainModel):
    """Line item with a snapshot of the product at order time."""

    product_id: str
    name: str
    category: str
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)
    subtotal: Decimal | None = Field(default=None, ge=0)

    @property
    def line_total(self) -> Decimal:
        if self.subtotal is not None:
            return self.subtotal
        return self.unit_price * self.quantity


class OrderLine(DomainModel):
    """Requested product and quantity when placing an order."""

    product_id: str
    quantity: int = Field(ge=1)


class Order(DomainModel):
    id: str = Field(default_factory=_new_id)
    order_number: str
    customer_id: str
    items: list[OrderItem] = Field(min_length=1)
    subtotal: Decimal = Field(ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    total_amount: Decimal = Field(ge=0)
    coupon_code: str | None = None
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    delivered_at: datetime | None = None

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Payment(DomainModel):
    id: str = Field(default_factory=_new_id)
    order_id: str
    amount: Decimal = Field(ge=0)
    method: str = "cash"
    status: PaymentStatus = PaymentStatus.COMPLETED
    created_at: datetime = Field(default_factory=_now)


class ActivityEntry(DomainModel):
    id: str = Field(default_factory=_new_id)
    action: str
    description: str
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


# -----------------------------------------------------------------------------
# Dashboard aggregates
# -----------------------------------------------------------------------------


class TodayStats(DomainModel):
    today_revenue: Decimal
    today_orders: int
    total_customers: int
    active_orders: int
    completed_orders: int
    cancelled_orders: int
    last_updated: datetime = Field(default_factory=_now)


class RevenuePoint(DomainModel):
    day: date
    revenue: Decimal
    count: int


class HourlySales(DomainModel):
    hour: int = Field(ge=0, le=23)
    revenue: Decimal
    orders: int


class TopProduct(DomainModel):
    product_id: str
    name: str
    category: str
    total_quantity: int
    total_revenue: Decimal


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(DomainModel):
    name: str
    status: HealthStatus
    message: str | None = None
    details: dict[str, Any] | None = None


class SystemStatus(DomainModel):
    status: HealthStatus
    components: list[ComponentHealth]
    checked_at: datetime = Field(default_factory=_now)


class OverviewSnapshot(DomainModel):
    """The cacheable part of the dashboard overview."""

    stats: TodayStats
    revenue_chart: list[RevenuePoint]
    hourly_sales: list[HourlySales]
    top_products: list[TopProduct]
    recent_activity: list[ActivityEntry]
    generated_at: datetime = Field(default_factory=_now)


class DashboardOverview(DomainModel):
    snapshot: OverviewSnapshot
    system_status: SystemStatus
