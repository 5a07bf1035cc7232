"""Grouped aggregation queries behind the dashboard.

Every method opens its own session so the dashboard composer can run them
concurrently. Day and hour buckets are computed in the business timezone.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

from sqlalchemy import and_, desc, extract, func, select

from crust.core.models import (
    ACTIVE_ORDER_STATUSES,
    ActivityEntry,
    CustomerRole,
    HourlySales,
    OrderStatus,
    PaymentStatus,
    RevenuePoint,
    TodayStats,
    TopProduct,
)
from crust.persistence.db import Database
from crust.persistence.repositories import ActivityRepository, CustomerRepository
from crust.persistence.tables import OrderItemTable, OrderTable, PaymentTable, ProductTable


class DashboardQueries:
    def __init__(
        self,
        db: Database,
        timezone: str = "UTC",
        open_hour: int = 10,
        close_hour: int = 23,
    ):
        self.db = db
        self.tz = ZoneInfo(timezone)
        self.open_hour = open_hour
        self.close_hour = close_hour
        self.customers = CustomerRepository(db)
        self.activity = ActivityRepository(db)

    def _local_today(self, now: datetime | None = None) -> date:
        return (now or datetime.now(UTC)).astimezone(self.tz).date()

    def _day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """UTC instants for the start and end of a local calendar day."""
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        end = start + timedelta(days=1)
        return start.astimezone(UTC), end.astimezone(UTC)

    def _local(self, column):
        return func.timezone(self.tz.key, column)

    async def today_stats(self, now: datetime | None = None) -> TodayStats:
        start, end = self._day_bounds(self._local_today(now))
        today = and_(OrderTable.created_at >= start, OrderTable.created_at < end)

        revenue_stmt = select(func.coalesce(func.sum(PaymentTable.amount), 0)).where(
            PaymentTable.status == PaymentStatus.COMPLETED.value,
            PaymentTable.created_at >= start,
            PaymentTable.created_at < end,
        )
        orders_stmt = select(
            func.count().label("total"),
            func.count().filter(OrderTable.status == OrderStatus.DELIVERED.value).label("completed"),
            func.count().filter(OrderTable.status == OrderStatus.CANCELLED.value).label("cancelled"),
        ).select_from(OrderTable).where(today)
        active_stmt = (
            select(func.count())
            .select_from(OrderTable)
            .where(OrderTable.status.in_([s.value for s in ACTIVE_ORDER_STATUSES]))
        )

        async with self.db.session() as session:
            revenue = (await session.execute(revenue_stmt)).scalar_one()
            counts = (await session.execute(orders_stmt)).one()
            active = (await session.execute(active_stmt)).scalar_one()

        return TodayStats(
            today_revenue=Decimal(revenue),
            today_orders=counts.total,
            total_customers=await self.customers.count_active(CustomerRole.CUSTOMER),
            active_orders=active,
            completed_orders=counts.completed,
            cancelled_orders=counts.cancelled,
        )

    async def revenue_chart(self, days: int = 7, now: datetime | None = None) -> list[RevenuePoint]:
        """Completed-payment revenue per local day, oldest first, zero-filled."""
        today = self._local_today(now)
        first_day = today - timedelta(days=days - 1)
        start, _ = self._day_bounds(first_day)
        _, end = self._day_bounds(today)

        day_col = func.date(self._local(PaymentTable.created_at)).label("day")
        stmt = (
            select(
                day_col,
                func.sum(PaymentTable.amount).label("revenue"),
                func.count().label("payments"),
            )
            .where(
                PaymentTable.status == PaymentStatus.COMPLETED.value,
                PaymentTable.created_at >= start,
                PaymentTable.created_at < end,
            )
            .group_by(day_col)
        )
        async with self.db.session() as session:
            rows = {row.day: row for row in (await session.execute(stmt)).all()}

        points = []
        for offset in range(days):
            day = first_day + timedelta(days=offset)
            row = rows.get(day)
            points.append(
                RevenuePoint(
                    day=day,
                    revenue=Decimal(row.revenue) if row else Decimal("0"),
                    count=row.payments if row else 0,
                )
            )
        return points

    async def hourly_sales(self, now: datetime | None = None) -> list[HourlySales]:
        """Today's completed payments bucketed by local hour within business hours."""
        start, end = self._day_bounds(self._local_today(now))
        hour_col = extract("hour", self._local(PaymentTable.created_at)).label("hour")
        stmt = (
            select(
                hour_col,
                func.sum(PaymentTable.amount).label("revenue"),
                func.count(func.distinct(PaymentTable.order_id)).label("orders"),
            )
            .select_from(PaymentTable)
            .join(OrderTable, OrderTable.id == PaymentTable.order_id)
            .where(
                PaymentTable.status == PaymentStatus.COMPLETED.value,
                PaymentTable.created_at >= start,
                PaymentTable.created_at < end,
                OrderTable.status != OrderStatus.CANCELLED.value,
            )
            .group_by(hour_col)
        )
        async with self.db.session() as session:
            rows = {int(row.hour): row for row in (await session.execute(stmt)).all()}

        return [
            HourlySales(
                hour=hour,
                revenue=Decimal(rows[hour].revenue) if hour in rows else Decimal("0"),
                orders=rows[hour].orders if hour in rows else 0,
            )
            for hour in range(self.open_hour, self.close_hour)
        ]

    async def top_products(self, limit: int = 5) -> list[TopProduct]:
        """Best sellers by quantity across non-cancelled orders."""
        quantity = func.sum(OrderItemTable.quantity).label("total_quantity")
        stmt = (
            select(
                OrderItemTable.product_id,
                func.coalesce(func.max(ProductTable.name), func.max(OrderItemTable.name)).label("name"),
                func.coalesce(func.max(ProductTable.category), func.max(OrderItemTable.category)).label(
                    "category"
                ),
                quantity,
                func.sum(OrderItemTable.subtotal).label("total_revenue"),
            )
            .select_from(OrderItemTable)
            .join(OrderTable, OrderTable.id == OrderItemTable.order_id)
            .outerjoin(ProductTable, ProductTable.id == OrderItemTable.product_id)
            .where(OrderTable.status != OrderStatus.CANCELLED.value)
            .group_by(OrderItemTable.product_id)
            .order_by(desc(quantity), OrderItemTable.product_id)
            .limit(limit)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).all()

        return [
            TopProduct(
                product_id=row.product_id,
                name=row.name,
                category=row.category,
                total_quantity=int(row.total_quantity),
                total_revenue=Decimal(row.total_revenue),
            )
            for row in rows
        ]

    async def recent_activity(self, limit: int = 20) -> list[ActivityEntry]:
        return await self.activity.recent(limit)
