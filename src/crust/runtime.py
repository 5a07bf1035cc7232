"""Composition root for crust.

Builds every component from Settings, owns the lifecycle of the Redis client,
the database engine and the background pool, and hands out wired services.
Nothing else in the package creates connections.

Usage:
    async with Runtime(settings) as runtime:
        business = await runtime.business.get()
        order = await runtime.orders.advance(order_id, OrderStatus.DELIVERED)
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import TYPE_CHECKING

from crust.cache.policy import PolicyRegistry
from crust.cache.read_through import ReadThroughStore
from crust.cache.redis import KeyValueCache, close_redis, create_redis
from crust.config import Settings
from crust.config import settings as default_settings
from crust.core.analytics import BehaviorPolicy
from crust.core.errors import AuthoritativeStoreError
from crust.events.publisher import InMemoryPublisher, RealtimePublisher, RedisPubSubPublisher
from crust.jobs.pool import BackgroundTaskPool, PoolConfig
from crust.persistence.db import Database
from crust.persistence.queries import DashboardQueries
from crust.persistence.repositories import (
    ActivityRepository,
    BusinessRepository,
    CouponRepository,
    CustomerRepository,
    OrderRepository,
    PaymentRepository,
    ProductRepository,
)
from crust.services.activity import ActivityRecorder
from crust.services.aggregation import AggregatorConfig, PostOrderAggregator
from crust.services.business import BusinessService, default_business
from crust.services.coupons import CouponService
from crust.services.dashboard import DashboardComposer, DashboardDefaults
from crust.services.orders import OrderService
from crust.services.products import ProductService

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


def create_publisher(settings: Settings, client: Redis) -> RealtimePublisher:
    """Create a realtime publisher based on configuration."""
    backend = settings.realtime_backend.lower()

    if backend in {"memory", "inmemory", "in_memory"}:
        return InMemoryPublisher()

    if backend in {"redis", "pubsub", "redis_pubsub"}:
        return RedisPubSubPublisher(client, channel=settings.realtime_channel)

    raise ValueError("Unsupported realtime_backend. Supported values: memory, redis.")


class Runtime:
    """Owns connections and wires services."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings
        s = self.settings

        self.redis = create_redis(s.redis_url)
        self.db = Database.from_settings(s)

        self.cache = KeyValueCache(self.redis, op_timeout=s.cache_op_timeout)
        self.registry = PolicyRegistry.default(short_ttl=s.cache_ttl_short, medium_ttl=s.cache_ttl_medium)
        self.store = ReadThroughStore(self.cache, self.registry)
        self.publisher = create_publisher(s, self.redis)
        self.pool = BackgroundTaskPool(
            PoolConfig(
                name="aggregation",
                workers=s.background_workers,
                queue_size=s.background_queue_size,
            )
        )

        self.product_repo = ProductRepository(self.db)
        self.customer_repo = CustomerRepository(self.db)
        self.order_repo = OrderRepository(self.db)
        self.activity = ActivityRecorder(ActivityRepository(self.db))

        self.business = BusinessService(
            self.store,
            BusinessRepository(self.db),
            defaults=default_business(s),
            publisher=self.publisher,
            activity=self.activity,
        )
        self.products = ProductService(self.store, self.product_repo, self.publisher, self.activity)
        self.coupons = CouponService(self.store, CouponRepository(self.db), self.activity)
        self.aggregator = PostOrderAggregator(
            products=self.product_repo,
            customers=self.customer_repo,
            orders=self.order_repo,
            cache=self.cache,
            store=self.store,
            pool=self.pool,
            config=AggregatorConfig(
                behavior=BehaviorPolicy(
                    most_ordered_limit=s.most_ordered_limit,
                    favorite_categories_limit=s.favorite_categories_limit,
                    frequency_regular_min=s.frequency_regular_min,
                    frequency_frequent_min=s.frequency_frequent_min,
                    timezone=s.business_timezone,
                ),
                dedupe_ttl=s.aggregation_dedupe_ttl,
                dlq_max=s.aggregation_dlq_max,
                chunk_size=s.aggregation_batch_chunk_size,
            ),
        )
        self.orders = OrderService(
            orders=self.order_repo,
            payments=PaymentRepository(self.db),
            products=self.products,
            coupons=self.coupons,
            store=self.store,
            aggregator=self.aggregator,
            publisher=self.publisher,
            activity=self.activity,
        )
        self.dashboard = DashboardComposer(
            store=self.store,
            queries=DashboardQueries(
                self.db,
                timezone=s.business_timezone,
                open_hour=s.business_open_hour,
                close_hour=s.business_close_hour,
            ),
            db=self.db,
            cache=self.cache,
            pool=self.pool,
            defaults=DashboardDefaults(
                revenue_days=s.dashboard_revenue_days,
                top_products_limit=s.dashboard_top_products_limit,
                recent_activity_limit=s.dashboard_recent_activity_limit,
            ),
        )

    async def start(self, warm: bool = True) -> None:
        """Start background workers and seed the business cache entry."""
        await self.pool.start()
        if warm:
            try:
                await self.business.warm()
            except AuthoritativeStoreError as e:
                logger.warning(f"Could not warm business cache: {e.text}")
        logger.info(f"{self.settings.app_name} runtime started ({self.settings.env})")

    async def stop(self) -> None:
        """Drain background work, then close connections."""
        await self.pool.stop(drain=True)
        await self.db.close()
        await close_redis(self.redis)
        logger.info(f"{self.settings.app_name} runtime stopped")

    async def __aenter__(self) -> Runtime:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
