"""Repositories for crust persistence.

Each repository method runs in its own transactional scope, so two calls are
two separately committed operations. Methods that must read-modify-write a
single row (customer behavior, order status) lock that row for the duration
of their scope.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import bindparam, case, delete, func, literal, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from crust.core.analytics import BASELINE_RATING, RATING_TIERS, ProductDelta
from crust.core.errors import BadRequestError, ConflictError
from crust.core.models import (
    BUSINESS_SINGLETON_ID,
    ORDER_TRANSITIONS,
    ActivityEntry,
    Business,
    Coupon,
    Customer,
    CustomerRole,
    Order,
    OrderingBehavior,
    OrderStatus,
    Payment,
    Product,
    ProductFilter,
)
from crust.persistence.db import Database
from crust.persistence.tables import (
    ActivityLogTable,
    BusinessTable,
    CouponTable,
    CustomerTable,
    OrderItemTable,
    OrderTable,
    PaymentTable,
    ProductTable,
)


def _now() -> datetime:
    return datetime.now(UTC)


class BaseRepository:
    """Base repository holding the Database handle."""

    def __init__(self, db: Database):
        self.db = db


# -----------------------------------------------------------------------------
# Business
# -----------------------------------------------------------------------------


def _business_from_row(row: BusinessTable) -> Business:
    return Business.model_validate(
        {
            **row.doc,
            "id": row.id,
            "is_open": row.is_open,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }
    )


class BusinessRepository(BaseRepository):
    """The business singleton, stored under an explicit id."""

    async def get(self) -> Business | None:
        async with self.db.session() as session:
            row = await session.get(BusinessTable, BUSINESS_SINGLETON_ID)
            return _business_from_row(row) if row is not None else None

    async def get_or_create(self, default: Business) -> Business:
        """Return the singleton, seeding it with ``default`` on first access."""
        now = _now()
        async with self.db.session() as session:
            stmt = (
                pg_insert(BusinessTable)
                .values(
                    id=BUSINESS_SINGLETON_ID,
                    is_open=default.is_open,
                    doc=default.model_dump(mode="json"),
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["id"])
            )
            await session.execute(stmt)
            row = await session.get(BusinessTable, BUSINESS_SINGLETON_ID)
            return _business_from_row(row)

    async def update(self, changes: dict[str, Any]) -> Business | None:
        async with self.db.session() as session:
            row = await session.get(BusinessTable, BUSINESS_SINGLETON_ID, with_for_update=True)
            if row is None:
                return None
            business = Business.model_validate(
                {**_business_from_row(row).model_dump(), **changes, "updated_at": _now()}
            )
            row.doc = business.model_dump(mode="json")
            row.is_open = business.is_open
            row.updated_at = business.updated_at
            await session.flush()
            return business


# -----------------------------------------------------------------------------
# Products
# -----------------------------------------------------------------------------


def _product_from_row(row: ProductTable) -> Product:
    return Product.model_validate(
        {
            **row.doc,
            "id": row.id,
            "sales_count": row.sales_count,
            "total_revenue": row.total_revenue,
            "rating": row.rating,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }
    )


def _rating_case() -> Any:
    """SQL CASE mirroring rating_for_sales over the current sales_count."""
    return case(
        *[(ProductTable.sales_count >= threshold, literal(rating)) for threshold, rating in RATING_TIERS],
        else_=literal(BASELINE_RATING),
    )


class ProductRepository(BaseRepository):
    async def get(self, product_id: str) -> Product | None:
        async with self.db.session() as session:
            row = await session.get(ProductTable, product_id)
            return _product_from_row(row) if row is not None else None

    async def list(self, product_filter: ProductFilter | None = None) -> list[Product]:
        product_filter = product_filter or ProductFilter()
        stmt = select(ProductTable).order_by(ProductTable.created_at.desc(), ProductTable.id)
        if product_filter.category:
            stmt = stmt.where(ProductTable.category == product_filter.category)
        if product_filter.available_only:
            stmt = stmt.where(ProductTable.is_available.is_(True))

        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [_product_from_row(row) for row in result.scalars()]

    async def create(self, product: Product) -> Product:
        async with self.db.session() as session:
            session.add(
                ProductTable(
                    id=product.id,
                    name=product.name,
                    category=product.category,
                    is_available=product.is_available,
                    doc=product.model_dump(mode="json"),
                    sales_count=product.sales_count,
                    total_revenue=product.total_revenue,
                    rating=product.rating,
                    created_at=product.created_at,
                    updated_at=product.updated_at,
                )
            )
            await session.flush()
        return product

    async def update(self, product_id: str, changes: dict[str, Any]) -> Product | None:
        async with self.db.session() as session:
            row = await session.get(ProductTable, product_id, with_for_update=True)
            if row is None:
                return None
            product = Product.model_validate(
                {**_product_from_row(row).model_dump(), **changes, "updated_at": _now()}
            )
            row.name = product.name
            row.category = product.category
            row.is_available = product.is_available
            row.doc = product.model_dump(mode="json")
            row.updated_at = product.updated_at
            await session.flush()
            return product

    async def delete(self, product_id: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(delete(ProductTable).where(ProductTable.id == product_id))
            return result.rowcount > 0

    async def existing_ids(self, product_ids: Iterable[str]) -> set[str]:
        ids = list(product_ids)
        if not ids:
            return set()
        async with self.db.session() as session:
            result = await session.execute(select(ProductTable.id).where(ProductTable.id.in_(ids)))
            return set(result.scalars())

    async def apply_sales(self, deltas: list[ProductDelta]) -> None:
        """Add sales quantity and revenue to many products in one round-trip."""
        if not deltas:
            return
        table = ProductTable.__table__
        stmt = (
            update(table)
            .where(table.c.id == bindparam("b_id"))
            .values(
                sales_count=table.c.sales_count + bindparam("b_qty"),
                total_revenue=table.c.total_revenue + bindparam("b_rev"),
                updated_at=func.now(),
            )
        )
        params = [{"b_id": d.product_id, "b_qty": d.quantity, "b_rev": d.revenue} for d in deltas]
        async with self.db.session() as session:
            await session.execute(stmt, params)

    async def refresh_ratings(self, product_ids: Iterable[str]) -> None:
        """Recompute the rating tier of exactly these products from their sales_count."""
        ids = list(product_ids)
        if not ids:
            return
        stmt = (
            update(ProductTable)
            .where(ProductTable.id.in_(ids))
            .values(rating=_rating_case())
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            await session.execute(stmt)


# -----------------------------------------------------------------------------
# Coupons
# -----------------------------------------------------------------------------


def _coupon_from_row(row: CouponTable) -> Coupon:
    return Coupon.model_validate(
        {
            **row.doc,
            "id": row.id,
            "code": row.code,
            "is_active": row.is_active,
            "max_uses": row.max_uses,
            "used_count": row.used_count,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }
    )


class CouponRepository(BaseRepository):
    async def get(self, coupon_id: str) -> Coupon | None:
        async with self.db.session() as session:
            row = await session.get(CouponTable, coupon_id)
            return _coupon_from_row(row) if row is not None else None

    async def get_by_code(self, code: str) -> Coupon | None:
        async with self.db.session() as session:
            result = await session.execute(select(CouponTable).where(CouponTable.code == code.upper()))
            row = result.scalar_one_or_none()
            return _coupon_from_row(row) if row is not None else None

    async def list(self, active_only: bool = False) -> list[Coupon]:
        stmt = select(CouponTable).order_by(CouponTable.created_at.desc(), CouponTable.id)
        if active_only:
            stmt = stmt.where(CouponTable.is_active.is_(True))
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [_coupon_from_row(row) for row in result.scalars()]

    async def create(self, coupon: Coupon) -> Coupon:
        async with self.db.session() as session:
            existing = await session.execute(select(CouponTable.id).where(CouponTable.code == coupon.code))
            if existing.scalar_one_or_none() is not None:
                raise ConflictError("Coupon", coupon.code)
            session.add(
                CouponTable(
                    id=coupon.id,
                    code=coupon.code,
                    is_active=coupon.is_active,
                    max_uses=coupon.max_uses,
                    used_count=coupon.used_count,
                    doc=coupon.model_dump(mode="json"),
                    created_at=coupon.created_at,
                    updated_at=coupon.updated_at,
                )
            )
            await session.flush()
        return coupon

    async def update(self, coupon_id: str, changes: dict[str, Any]) -> tuple[Coupon, Coupon] | None:
        """Apply changes; returns (before, after) so both codes can be invalidated."""
        async with self.db.session() as session:
            row = await session.get(CouponTable, coupon_id, with_for_update=True)
            if row is None:
                return None
            before = _coupon_from_row(row)
            after = Coupon.model_validate({**before.model_dump(), **changes, "updated_at": _now()})
            if after.code != before.code:
                clash = await session.execute(
                    select(CouponTable.id).where(CouponTable.code == after.code)
                )
                if clash.scalar_one_or_none() is not None:
                    raise ConflictError("Coupon", after.code)
            row.code = after.code
            row.is_active = after.is_active
            row.max_uses = after.max_uses
            row.doc = after.model_dump(mode="json")
            row.updated_at = after.updated_at
            await session.flush()
            return before, after

    async def delete(self, coupon_id: str) -> Coupon | None:
        async with self.db.session() as session:
            row = await session.get(CouponTable, coupon_id)
            if row is None:
                return None
            coupon = _coupon_from_row(row)
            await session.delete(row)
            await session.flush()
            return coupon

    async def claim_use(self, coupon_id: str) -> int | None:
        """Atomically count one use if the usage limit allows it.

        Returns the new used_count, or None if the limit was already reached.
        """
        stmt = (
            update(CouponTable)
            .where(CouponTable.id == coupon_id)
            .where((CouponTable.max_uses.is_(None)) | (CouponTable.used_count < CouponTable.max_uses))
            .values(used_count=CouponTable.used_count + 1, updated_at=func.now())
            .returning(CouponTable.used_count)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def release_use(self, coupon_id: str) -> int | None:
        """Give back one counted use. Returns the new used_count, or None if none was counted."""
        stmt = (
            update(CouponTable)
            .where(CouponTable.id == coupon_id)
            .where(CouponTable.used_count > 0)
            .values(used_count=CouponTable.used_count - 1, updated_at=func.now())
            .returning(CouponTable.used_count)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()


# -----------------------------------------------------------------------------
# Customers
# -----------------------------------------------------------------------------


def _customer_from_row(row: CustomerTable) -> Customer:
    return Customer.model_validate(
        {
            **row.doc,
            "id": row.id,
            "role": row.role,
            "is_active": row.is_active,
            "ordering_behavior": row.behavior or {},
            "created_at": row.created_at,
        }
    )


class CustomerRepository(BaseRepository):
    async def get(self, customer_id: str) -> Customer | None:
        async with self.db.session() as session:
            row = await session.get(CustomerTable, customer_id)
            return _customer_from_row(row) if row is not None else None

    async def create(self, customer: Customer) -> Customer:
        async with self.db.session() as session:
            session.add(
                CustomerTable(
                    id=customer.id,
                    email=customer.email,
                    role=customer.role.value,
                    is_active=customer.is_active,
                    doc=customer.model_dump(mode="json", exclude={"ordering_behavior"}),
                    behavior=customer.ordering_behavior.model_dump(mode="json"),
                    created_at=customer.created_at,
                )
            )
            await session.flush()
        return customer

    async def update_behavior(
        self,
        customer_id: str,
        fold: Callable[[Customer], OrderingBehavior | None],
    ) -> Customer | None:
        """Lock the customer row, compute new behavior from it and persist it.

        ``fold`` may return None to leave the record untouched.
        """
        async with self.db.session() as session:
            row = await session.get(CustomerTable, customer_id, with_for_update=True)
            if row is None:
                return None
            customer = _customer_from_row(row)
            behavior = fold(customer)
            if behavior is None:
                return customer
            row.behavior = behavior.model_dump(mode="json")
            await session.flush()
            return customer.model_copy(update={"ordering_behavior": behavior})

    async def count_active(self, role: CustomerRole = CustomerRole.CUSTOMER) -> int:
        stmt = (
            select(func.count())
            .select_from(CustomerTable)
            .where(CustomerTable.role == role.value, CustomerTable.is_active.is_(True))
        )
        async with self.db.session() as session:
            return int((await session.execute(stmt)).scalar_one())


# -----------------------------------------------------------------------------
# Orders and payments
# -----------------------------------------------------------------------------


def _order_from_row(row: OrderTable) -> Order:
    return Order.model_validate(
        {
            **row.doc,
            "id": row.id,
            "status": row.status,
            "delivered_at": row.delivered_at,
            "updated_at": row.updated_at,
        }
    )


class OrderRepository(BaseRepository):
    async def create(self, order: Order) -> Order:
        async with self.db.session() as session:
            session.add(
                OrderTable(
                    id=order.id,
                    order_number=order.order_number,
                    customer_id=order.customer_id,
                    status=order.status.value,
                    total_amount=order.total_amount,
                    delivered_at=order.delivered_at,
                    doc=order.model_dump(mode="json"),
                    created_at=order.created_at,
                    updated_at=order.updated_at,
                )
            )
            # Parent row must exist before its items reference it
            await session.flush()
            session.add_all(
                OrderItemTable(
                    order_id=order.id,
                    product_id=item.product_id,
                    name=item.name,
                    category=item.category,
                    quantity=item.quantity,
                    subtotal=item.line_total,
                )
                for item in order.items
            )
            await session.flush()
        return order

    async def get(self, order_id: str) -> Order | None:
        async with self.db.session() as session:
            row = await session.get(OrderTable, order_id)
            return _order_from_row(row) if row is not None else None

    async def get_many(self, order_ids: Iterable[str]) -> list[Order]:
        ids = list(order_ids)
        if not ids:
            return []
        async with self.db.session() as session:
            result = await session.execute(select(OrderTable).where(OrderTable.id.in_(ids)))
            return [_order_from_row(row) for row in result.scalars()]

    async def transition(self, order_id: str, status: OrderStatus) -> tuple[Order, OrderStatus] | None:
        """Move an order to ``status`` if the lifecycle allows it.

        Returns (updated order, previous status), or None if the order does
        not exist. Raises BadRequestError for a disallowed transition.
        """
        async with self.db.session() as session:
            row = await session.get(OrderTable, order_id, with_for_update=True)
            if row is None:
                return None
            previous = OrderStatus(row.status)
            if status not in ORDER_TRANSITIONS[previous]:
                raise BadRequestError(
                    f"Order {row.order_number} cannot move from {previous.value} to {status.value}"
                )

            now = _now()
            row.status = status.value
            row.updated_at = now
            if status == OrderStatus.DELIVERED:
                row.delivered_at = now
            row.doc = {
                **row.doc,
                "status": status.value,
                "updated_at": now.isoformat(),
                "delivered_at": row.delivered_at.isoformat() if row.delivered_at else None,
            }
            await session.flush()
            return _order_from_row(row), previous

    async def list_delivered(self, limit: int = 50, offset: int = 0) -> list[Order]:
        stmt = (
            select(OrderTable)
            .where(OrderTable.status == OrderStatus.DELIVERED.value)
            .order_by(OrderTable.delivered_at, OrderTable.id)
            .limit(limit)
            .offset(offset)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [_order_from_row(row) for row in result.scalars()]


class PaymentRepository(BaseRepository):
    async def create(self, payment: Payment) -> Payment:
        async with self.db.session() as session:
            session.add(
                PaymentTable(
                    id=payment.id,
                    order_id=payment.order_id,
                    amount=payment.amount,
                    method=payment.method,
                    status=payment.status.value,
                    created_at=payment.created_at,
                )
            )
            await session.flush()
        return payment


# -----------------------------------------------------------------------------
# Activity log
# -----------------------------------------------------------------------------


def _activity_from_row(row: ActivityLogTable) -> ActivityEntry:
    return ActivityEntry(
        id=row.id,
        action=row.action,
        description=row.description,
        user_id=row.user_id,
        metadata=row.details or {},
        created_at=row.created_at,
    )


class ActivityRepository(BaseRepository):
    async def record(self, entry: ActivityEntry) -> ActivityEntry:
        async with self.db.session() as session:
            session.add(
                ActivityLogTable(
                    id=entry.id,
                    action=entry.action,
                    description=entry.description,
                    user_id=entry.user_id,
                    details=entry.metadata,
                    created_at=entry.created_at,
                )
            )
            await session.flush()
        return entry

    async def recent(self, limit: int = 20) -> list[ActivityEntry]:
        stmt = select(ActivityLogTable).order_by(ActivityLogTable.created_at.desc()).limit(limit)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [_activity_from_row(row) for row in result.scalars()]
