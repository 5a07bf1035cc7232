"""Admin dashboard composition.

Five sub-aggregates are cached individually at their own TTLs and can be
fetched on their own. The overview joins all five concurrently and is cached
as one snapshot at the shortest of their TTLs; if any part fails the whole
overview fails and nothing is cached. System status is checked live on every
call and never cached.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import TypeAdapter

from crust.cache.policy import EntityClass
from crust.cache.read_through import ReadThroughStore
from crust.cache.redis import KeyValueCache
from crust.core.errors import AuthoritativeStoreError, BadRequestError
from crust.core.models import (
    ActivityEntry,
    ComponentHealth,
    DashboardOverview,
    HealthStatus,
    HourlySales,
    OverviewSnapshot,
    RevenuePoint,
    SystemStatus,
    TodayStats,
    TopProduct,
)
from crust.jobs.pool import BackgroundTaskPool
from crust.persistence.db import Database
from crust.persistence.queries import DashboardQueries

logger = logging.getLogger(__name__)

_STATS = TypeAdapter(TodayStats)
_REVENUE = TypeAdapter(list[RevenuePoint])
_HOURLY = TypeAdapter(list[HourlySales])
_TOP = TypeAdapter(list[TopProduct])
_ACTIVITY = TypeAdapter(list[ActivityEntry])
_SNAPSHOT = TypeAdapter(OverviewSnapshot)


@dataclass(frozen=True, slots=True)
class DashboardDefaults:
    revenue_days: int = 7
    top_products_limit: int = 5
    recent_activity_limit: int = 20


class DashboardComposer:
    def __init__(
        self,
        store: ReadThroughStore,
        queries: DashboardQueries,
        db: Database,
        cache: KeyValueCache,
        pool: BackgroundTaskPool | None = None,
        defaults: DashboardDefaults | None = None,
    ):
        self.store = store
        self.queries = queries
        self.db = db
        self.cache = cache
        self.pool = pool
        self.defaults = defaults or DashboardDefaults()

    # -------------------------------------------------------------------------
    # Sub-aggregates
    # -------------------------------------------------------------------------

    async def stats(self) -> TodayStats:
        return await self._read("stats", self.queries.today_stats, _STATS)

    async def revenue_chart(self, days: int | None = None) -> list[RevenuePoint]:
        days = days or self.defaults.revenue_days
        return await self._read("revenue_chart", lambda: self.queries.revenue_chart(days), _REVENUE, days=days)

    async def hourly_sales(self) -> list[HourlySales]:
        return await self._read("hourly_sales", self.queries.hourly_sales, _HOURLY)

    async def top_products(self, limit: int | None = None) -> list[TopProduct]:
        limit = limit or self.defaults.top_products_limit
        return await self._read("top_products", lambda: self.queries.top_products(limit), _TOP, limit=limit)

    async def recent_activity(self, limit: int | None = None) -> list[ActivityEntry]:
        limit = limit or self.defaults.recent_activity_limit
        return await self._read(
            "recent_activity", lambda: self.queries.recent_activity(limit), _ACTIVITY, limit=limit
        )

    async def sub_aggregate(self, name: str, **params: Any) -> Any:
        """Fetch one dashboard slice by name."""
        handlers: dict[str, Callable[..., Awaitable[Any]]] = {
            "stats": self.stats,
            "revenue_chart": self.revenue_chart,
            "hourly_sales": self.hourly_sales,
            "top_products": self.top_products,
            "recent_activity": self.recent_activity,
            "system_status": self.system_status,
        }
        handler = handlers.get(name)
        if handler is None:
            raise BadRequestError(f"Unknown dashboard aggregate: {name}")
        try:
            inspect.signature(handler).bind(**params)
        except TypeError as e:
            raise BadRequestError(f"Invalid parameters for {name}: {e}") from e
        return await handler(**params)

    async def _read(self, name: str, fetch: Callable[[], Awaitable[Any]], adapter: TypeAdapter[Any], **params: Any) -> Any:
        return await self.store.read(EntityClass.DASHBOARD, name, fetch, adapter, **params)

    # -------------------------------------------------------------------------
    # Overview
    # -------------------------------------------------------------------------

    async def overview(self) -> DashboardOverview:
        """Combined dashboard. Fails as a whole if any part fails."""
        snapshot = await self.store.read(EntityClass.DASHBOARD, "overview", self._compose, _SNAPSHOT)
        if snapshot is None:
            raise AuthoritativeStoreError("Dashboard overview could not be composed")
        return DashboardOverview(snapshot=snapshot, system_status=await self.system_status())

    async def _compose(self) -> OverviewSnapshot:
        stats, revenue_chart, hourly_sales, top_products, recent_activity = await asyncio.gather(
            self.stats(),
            self.revenue_chart(),
            self.hourly_sales(),
            self.top_products(),
            self.recent_activity(),
        )
        return OverviewSnapshot(
            stats=stats,
            revenue_chart=revenue_chart,
            hourly_sales=hourly_sales,
            top_products=top_products,
            recent_activity=recent_activity,
        )

    async def invalidate(self) -> int:
        return await self.store.invalidate(EntityClass.DASHBOARD)

    # -------------------------------------------------------------------------
    # System status (always live)
    # -------------------------------------------------------------------------

    async def system_status(self) -> SystemStatus:
        db_ok, cache_ok = await asyncio.gather(self.db.health_check(), self.cache.ping())

        components = [
            ComponentHealth(
                name="database",
                status=HealthStatus.HEALTHY if db_ok else HealthStatus.UNHEALTHY,
                message=None if db_ok else "Database connection failed",
            ),
            ComponentHealth(
                name="cache",
                status=HealthStatus.HEALTHY if cache_ok else HealthStatus.DEGRADED,
                message=None if cache_ok else "Cache unavailable, serving from database",
            ),
        ]
        if self.pool is not None:
            stats = self.pool.stats()
            components.append(
                ComponentHealth(
                    name="background_pool",
                    status=HealthStatus.HEALTHY if stats["running"] else HealthStatus.DEGRADED,
                    details=stats,
                )
            )

        if any(c.status == HealthStatus.UNHEALTHY for c in components):
            overall = HealthStatus.UNHEALTHY
        elif any(c.status == HealthStatus.DEGRADED for c in components):
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY
        return SystemStatus(status=overall, components=components)
