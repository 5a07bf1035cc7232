"""Redis-backed key/value cache for crust.

The cache is advisory: every operation is bounded by a short timeout and any
failure (connection error, timeout, Redis error) is logged and turned into a
miss or a no-op. Callers never see a cache exception.

The Redis client is created by the composition root with create_redis() and
passed in explicitly; nothing here holds a module-level connection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

import orjson
import redis.asyncio as redis
from redis.exceptions import RedisError

from crust.core.errors import CacheUnavailable
from crust.observability.metrics import record_cache_error, record_cache_operation

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_OP_TIMEOUT = 0.25
DEFAULT_SCAN_TIMEOUT = 5.0


def create_redis(url: str) -> Redis:
    """Create a pooled Redis client storing raw bytes."""
    return redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=False,
    )


async def close_redis(client: Redis) -> None:
    """Close a client created by create_redis()."""
    await client.aclose()


def _to_str(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


class KeyValueCache:
    """Thin async key/value store with TTL, pattern delete and get-or-compute.

    Values are bytes. A ttl of None stores the value permanently (until it is
    explicitly deleted).
    """

    def __init__(
        self,
        client: Redis,
        op_timeout: float = DEFAULT_OP_TIMEOUT,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
    ):
        self.client = client
        self.op_timeout = op_timeout
        self.scan_timeout = scan_timeout

    # -------------------------------------------------------------------------
    # Failure boundary
    # -------------------------------------------------------------------------

    async def _run(
        self,
        operation: str,
        key: str,
        call: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run one Redis call under a timeout, mapping failures to CacheUnavailable."""
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(call(), timeout=timeout or self.op_timeout)
        except TimeoutError as e:
            raise CacheUnavailable(operation, key, "timed out") from e
        except (RedisError, OSError) as e:
            raise CacheUnavailable(operation, key, str(e) or type(e).__name__) from e
        finally:
            record_cache_operation(operation, time.perf_counter() - start)

    async def _safe(
        self,
        operation: str,
        key: str,
        call: Callable[[], Awaitable[T]],
        default: Any,
        timeout: float | None = None,
    ) -> Any:
        try:
            return await self._run(operation, key, call, timeout)
        except CacheUnavailable as e:
            logger.warning(f"Cache unavailable, continuing without it: {e}")
            record_cache_error(operation)
            return default

    # -------------------------------------------------------------------------
    # Basic operations
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> bytes | None:
        """Return the stored value, or None if missing, expired or unreachable."""
        return await self._safe("get", key, lambda: self.client.get(key), None)

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        """Store a value. Returns False if the write did not reach the cache."""
        result = await self._safe(
            "set", key, lambda: self.client.set(key, value, ex=ttl), False
        )
        return bool(result)

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        if not keys:
            return 0
        return int(await self._safe("delete", keys[0], lambda: self.client.delete(*keys), 0))

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob.

        Uses SCAN to avoid blocking on large keyspaces. Intended for operator
        tooling; the read path invalidates through the policy registry.
        """

        async def scan_and_delete() -> int:
            deleted = 0
            batch: list[bytes] = []
            async for key in self.client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self.client.delete(*batch)
                    batch.clear()
            if batch:
                deleted += await self.client.delete(*batch)
            return deleted

        return int(
            await self._safe(
                "delete_pattern", pattern, scan_and_delete, 0, timeout=self.scan_timeout
            )
        )

    async def exists(self, key: str) -> bool:
        result = await self._safe("exists", key, lambda: self.client.exists(key), 0)
        return bool(result)

    async def increment(self, key: str, amount: int = 1) -> int | None:
        """Atomically increment a counter. Returns None if the cache is unreachable."""
        return await self._safe("increment", key, lambda: self.client.incrby(key, amount), None)

    async def set_if_absent(self, key: str, value: bytes, ttl: int | None = None) -> bool | None:
        """SET NX. True if claimed, False if already present, None if unreachable."""
        result = await self._safe(
            "set_if_absent",
            key,
            lambda: self.client.set(key, value, ex=ttl, nx=True),
            None,
        )
        if result is None:
            return None
        return bool(result)

    async def ping(self) -> bool:
        result = await self._safe("ping", "", lambda: self.client.ping(), False)
        return bool(result)

    # -------------------------------------------------------------------------
    # Get-or-compute
    # -------------------------------------------------------------------------

    async def get_or_set(
        self,
        key: str,
        ttl: int | None,
        compute: Callable[[], Awaitable[T | None]],
        dumps: Callable[[T], bytes] = orjson.dumps,
        loads: Callable[[bytes], T] = orjson.loads,
    ) -> T | None:
        """Return the cached value, or compute, store and return it.

        A None result is returned but never cached. If storing the computed
        value fails the value is still returned. A cached value that cannot be
        decoded is treated as a miss and overwritten.

        Two concurrent callers may both miss and both compute; compute reads
        the same authoritative state, so the duplicate work is an accepted
        inefficiency rather than a correctness problem.
        """
        cached = await self.get(key)
        if cached is not None:
            try:
                return loads(cached)
            except ValueError as e:
                logger.warning(f"Discarding undecodable cache entry {key}: {e}")

        value = await compute()
        if value is not None:
            await self.set(key, dumps(value), ttl)
        return value

    # -------------------------------------------------------------------------
    # Key index (sets of parameterised keys per entity)
    # -------------------------------------------------------------------------

    async def track(self, index_key: str, key: str, ttl: int | None = None) -> None:
        """Record a populated key in an index set so it can be invalidated later."""

        async def add() -> None:
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.sadd(index_key, key)
                if ttl is not None:
                    pipe.expire(index_key, ttl)
                await pipe.execute()

        await self._safe("track", index_key, add, None)

    async def members(self, index_key: str) -> set[str]:
        result = await self._safe("members", index_key, lambda: self.client.smembers(index_key), None)
        if not result:
            return set()
        return {_to_str(member) for member in result}

    # -------------------------------------------------------------------------
    # Capped record lists
    # -------------------------------------------------------------------------

    async def push_record(self, list_key: str, value: bytes, max_len: int) -> bool:
        """Prepend a record and trim the list to max_len entries."""

        async def push() -> bool:
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.lpush(list_key, value)
                pipe.ltrim(list_key, 0, max_len - 1)
                await pipe.execute()
            return True

        return bool(await self._safe("push_record", list_key, push, False))

    async def pop_record(self, list_key: str) -> bytes | None:
        """Remove and return the oldest record."""
        return await self._safe("pop_record", list_key, lambda: self.client.rpop(list_key), None)

    async def list_length(self, list_key: str) -> int:
        return int(await self._safe("list_length", list_key, lambda: self.client.llen(list_key), 0))
