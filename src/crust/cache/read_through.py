"""Read-through / cache-aside access to the authoritative store.

Reads try the cache first and fall back to the store on a miss, populating
the cache with the view's TTL. Writes commit to the store first and only
then invalidate, so a concurrent reader cannot repopulate the cache with the
pre-write value after the delete.

A residual window remains: between the store commit and the invalidation a
reader may cache the new value's predecessor. That entry lives at most one
TTL; closing the window would need distributed locking.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from pydantic import TypeAdapter

from crust.cache.policy import EntityClass, KeyScope, PolicyRegistry
from crust.cache.redis import KeyValueCache
from crust.observability.metrics import record_cache_hit, record_cache_miss, record_invalidation

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReadThroughStore:
    """Cache-aside wrapper used by every cached read and write path."""

    def __init__(self, cache: KeyValueCache, registry: PolicyRegistry):
        self.cache = cache
        self.registry = registry

    async def read(
        self,
        entity: EntityClass,
        view: str,
        fetch: Callable[[], Awaitable[T | None]],
        adapter: TypeAdapter[T],
        **params: Any,
    ) -> T | None:
        """Return a view from cache, or fetch it from the store and cache it.

        A None result from the store (not found) is returned but never cached.
        """
        policy = self.registry.policy(entity)
        template = policy.template(view)
        key = template.resolve(**params)
        ttl = self.registry.ttl_for(entity, view)

        if ttl == 0:
            return await fetch()

        hit = True

        async def compute() -> T | None:
            nonlocal hit
            hit = False
            value = await fetch()
            if value is not None and template.scope == KeyScope.INDEXED:
                await self.cache.track(policy.index_key, key, self.registry.index_ttl(entity))
            return value

        value = await self.cache.get_or_set(
            key,
            ttl,
            compute,
            dumps=adapter.dump_json,
            loads=adapter.validate_json,
        )

        if hit:
            record_cache_hit(entity.value)
        else:
            record_cache_miss(entity.value)
            logger.debug(f"Cache miss for {key}")
        return value

    async def write(
        self,
        entity: EntityClass,
        selector: str | None,
        mutate: Callable[[], Awaitable[T]],
    ) -> T:
        """Run an authoritative write, then invalidate the entity's keys.

        Store errors propagate and skip invalidation; cache errors during
        invalidation are absorbed by the cache layer.
        """
        result = await mutate()
        await self.invalidate(entity, selector)
        return result

    async def invalidate(self, entity: EntityClass, selector: str | None = None) -> int:
        """Delete the instance key (if any), fixed keys and every indexed view."""
        policy = self.registry.policy(entity)
        keys = policy.invalidation_keys(selector)

        index_key = policy.index_key
        indexed = await self.cache.members(index_key)
        keys.extend(sorted(indexed))
        if indexed:
            keys.append(index_key)

        deleted = await self.cache.delete(*keys)
        record_invalidation(entity.value, deleted)
        logger.debug(f"Invalidated {deleted} {entity.value} cache keys (selector={selector})")
        return deleted

    async def invalidate_items(self, entity: EntityClass, selectors: list[str]) -> int:
        """Delete only instance keys, leaving fixed and indexed views alone."""
        policy = self.registry.policy(entity)
        keys = [
            template.resolve(selector)
            for selector in selectors
            for template in policy.templates
            if template.scope == KeyScope.ITEM
        ]
        deleted = await self.cache.delete(*keys)
        record_invalidation(entity.value, deleted)
        return deleted

    async def seed(self, entity: EntityClass, view: str, value: T, adapter: TypeAdapter[T], **params: Any) -> bool:
        """Populate a view directly, e.g. the permanent business entry at startup."""
        policy = self.registry.policy(entity)
        template = policy.template(view)
        key = template.resolve(**params)
        ttl = self.registry.ttl_for(entity, view)
        stored = await self.cache.set(key, adapter.dump_json(value), ttl)
        if stored and template.scope == KeyScope.INDEXED:
            await self.cache.track(policy.index_key, key, self.registry.index_ttl(entity))
        return stored
