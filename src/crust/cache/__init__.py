"""Cache layer for crust.

Provides Redis caching with the cache-aside pattern:
- KeyValueCache bounds every operation by a timeout and degrades to a miss
- Per-entity policies name keys, TTL classes and invalidation sets
- ReadThroughStore reads through the cache and invalidates after writes
"""

from crust.cache.keys import CacheKeys
from crust.cache.policy import CachePolicy, EntityClass, PolicyRegistry, TtlClass
from crust.cache.read_through import ReadThroughStore
from crust.cache.redis import KeyValueCache, close_redis, create_redis

__all__ = [
    "CacheKeys",
    "CachePolicy",
    "EntityClass",
    "KeyValueCache",
    "PolicyRegistry",
    "ReadThroughStore",
    "TtlClass",
    "close_redis",
    "create_redis",
]
