"""In-memory stand-ins for Redis and the repositories.

FakeRedis implements the subset of redis.asyncio.Redis that KeyValueCache
and the realtime publisher call, with a controllable clock so TTL expiry
can be tested without sleeping. Setting ``fail`` makes every call raise a
connection error; setting ``delay`` makes every call slow.
"""

from __future__ import annotations

import asyncio
import fnmatch
from collections.abc import AsyncIterator, Callable, Iterable
from types import TracebackType
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError

from crust.core.analytics import ProductDelta, rating_for_sales
from crust.core.errors import AuthoritativeStoreError
from crust.core.models import Customer, OrderingBehavior, Product


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _key(key: str | bytes) -> str:
    return key.decode() if isinstance(key, bytes) else key


def _value(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode()


class FakePipeline:
    """Buffers commands and runs them on execute()."""

    def __init__(self, redis: FakeRedis) -> None:
        self.redis = redis
        self._commands: list[tuple[str, tuple[Any, ...]]] = []

    def __getattr__(self, name: str) -> Callable[..., FakePipeline]:
        def queue(*args: Any) -> FakePipeline:
            self._commands.append((name, args))
            return self

        return queue

    async def execute(self) -> list[Any]:
        await self.redis._enter("execute")
        results = []
        for name, args in self._commands:
            results.append(self.redis._apply(name, *args))
        self._commands.clear()
        return results

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self._commands.clear()


class FakeRedis:
    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self.data: dict[str, Any] = {}
        self.expires: dict[str, float] = {}
        self.published: list[tuple[str, bytes]] = []
        self.calls: list[str] = []
        self.fail = False
        self.delay = 0.0
        self.closed = False

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def ttl_of(self, key: str) -> float | None:
        """Remaining seconds, or None for a key without expiry."""
        self._expire_if_due(key)
        if key not in self.expires:
            return None
        return self.expires[key] - self.clock()

    def keys_matching(self, pattern: str = "*") -> list[str]:
        for key in list(self.data):
            self._expire_if_due(key)
        return sorted(k for k in self.data if fnmatch.fnmatchcase(k, pattern))

    async def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def _expire_if_due(self, key: str) -> None:
        deadline = self.expires.get(key)
        if deadline is not None and self.clock() >= deadline:
            self.data.pop(key, None)
            self.expires.pop(key, None)

    # -------------------------------------------------------------------------
    # Synchronous implementations shared by direct calls and pipelines
    # -------------------------------------------------------------------------

    def _apply(self, name: str, *args: Any, **kwargs: Any) -> Any:
        return getattr(self, f"_do_{name}")(*args, **kwargs)

    def _do_get(self, key: str) -> bytes | None:
        key = _key(key)
        self._expire_if_due(key)
        return self.data.get(key)

    def _do_set(self, key: str, value: Any, ex: int | None = None, nx: bool = False) -> bool | None:
        key = _key(key)
        self._expire_if_due(key)
        if nx and key in self.data:
            return None
        self.data[key] = _value(value)
        self.expires.pop(key, None)
        if ex is not None:
            self.expires[key] = self.clock() + ex
        return True

    def _do_delete(self, *keys: str | bytes) -> int:
        deleted = 0
        for raw in keys:
            key = _key(raw)
            self._expire_if_due(key)
            if key in self.data:
                del self.data[key]
                self.expires.pop(key, None)
                deleted += 1
        return deleted

    def _do_exists(self, key: str) -> int:
        key = _key(key)
        self._expire_if_due(key)
        return int(key in self.data)

    def _do_incrby(self, key: str, amount: int) -> int:
        key = _key(key)
        self._expire_if_due(key)
        value = int(self.data.get(key, b"0")) + amount
        self.data[key] = str(value).encode()
        return value

    def _do_sadd(self, key: str, *members: Any) -> int:
        key = _key(key)
        self._expire_if_due(key)
        existing = self.data.setdefault(key, set())
        before = len(existing)
        existing.update(_value(m) for m in members)
        return len(existing) - before

    def _do_smembers(self, key: str) -> set[bytes]:
        key = _key(key)
        self._expire_if_due(key)
        return set(self.data.get(key, set()))

    def _do_expire(self, key: str, seconds: int) -> bool:
        key = _key(key)
        if key not in self.data:
            return False
        self.expires[key] = self.clock() + seconds
        return True

    def _do_lpush(self, key: str, *values: Any) -> int:
        key = _key(key)
        items = self.data.setdefault(key, [])
        for value in values:
            items.insert(0, _value(value))
        return len(items)

    def _do_ltrim(self, key: str, start: int, end: int) -> bool:
        key = _key(key)
        items = self.data.get(key, [])
        self.data[key] = items[start : end + 1]
        return True

    def _do_rpop(self, key: str) -> bytes | None:
        key = _key(key)
        items = self.data.get(key)
        if not items:
            return None
        value = items.pop()
        if not items:
            del self.data[key]
        return value

    def _do_llen(self, key: str) -> int:
        return len(self.data.get(_key(key), []))

    # -------------------------------------------------------------------------
    # redis.asyncio.Redis surface
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> bytes | None:
        await self._enter("get")
        return self._do_get(key)

    async def set(self, key: str, value: Any, ex: int | None = None, nx: bool = False) -> bool | None:
        await self._enter("set")
        return self._do_set(key, value, ex=ex, nx=nx)

    async def delete(self, *keys: str | bytes) -> int:
        await self._enter("delete")
        return self._do_delete(*keys)

    async def exists(self, key: str) -> int:
        await self._enter("exists")
        return self._do_exists(key)

    async def incrby(self, key: str, amount: int = 1) -> int:
        await self._enter("incrby")
        return self._do_incrby(key, amount)

    async def smembers(self, key: str) -> set[bytes]:
        await self._enter("smembers")
        return self._do_smembers(key)

    async def rpop(self, key: str) -> bytes | None:
        await self._enter("rpop")
        return self._do_rpop(key)

    async def llen(self, key: str) -> int:
        await self._enter("llen")
        return self._do_llen(key)

    async def ping(self) -> bool:
        await self._enter("ping")
        return True

    async def publish(self, channel: str, message: bytes) -> int:
        await self._enter("publish")
        self.published.append((channel, message))
        return 0

    async def scan_iter(self, match: str = "*", count: int | None = None) -> AsyncIterator[bytes]:
        await self._enter("scan_iter")
        for key in self.keys_matching(match):
            yield key.encode()

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


# -----------------------------------------------------------------------------
# Repositories
# -----------------------------------------------------------------------------


class InMemoryProductRepository:
    """Product statistics store mirroring ProductRepository's aggregation calls."""

    def __init__(self, products: Iterable[Product] = ()) -> None:
        self.products = {p.id: p for p in products}
        self.fail_apply = False

    async def get(self, product_id: str) -> Product | None:
        return self.products.get(product_id)

    async def existing_ids(self, product_ids: Iterable[str]) -> set[str]:
        return {pid for pid in product_ids if pid in self.products}

    async def apply_sales(self, deltas: list[ProductDelta]) -> None:
        if self.fail_apply:
            raise AuthoritativeStoreError("database operation failed: connection reset")
        for delta in deltas:
            product = self.products[delta.product_id]
            self.products[delta.product_id] = product.model_copy(
                update={
                    "sales_count": product.sales_count + delta.quantity,
                    "total_revenue": product.total_revenue + delta.revenue,
                }
            )

    async def refresh_ratings(self, product_ids: Iterable[str]) -> None:
        for pid in product_ids:
            product = self.products[pid]
            self.products[pid] = product.model_copy(
                update={"rating": rating_for_sales(product.sales_count)}
            )


class InMemoryCustomerRepository:
    def __init__(self, customers: Iterable[Customer] = ()) -> None:
        self.customers = {c.id: c for c in customers}
        self.fail = False

    async def get(self, customer_id: str) -> Customer | None:
        return self.customers.get(customer_id)

    async def update_behavior(
        self,
        customer_id: str,
        fold: Callable[[Customer], OrderingBehavior | None],
    ) -> Customer | None:
        if self.fail:
            raise AuthoritativeStoreError("database operation failed: deadlock detected")
        customer = self.customers.get(customer_id)
        if customer is None:
            return None
        behavior = fold(customer)
        if behavior is None:
            return customer
        updated = customer.model_copy(update={"ordering_behavior": behavior})
        self.customers[customer_id] = updated
        return updated


