"""Global pytest configuration and fixtures."""

from __future__ import annotations

import pytest

from crust.cache.policy import PolicyRegistry
from crust.cache.read_through import ReadThroughStore
from crust.cache.redis import KeyValueCache
from tests.fakes import FakeClock, FakeRedis


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: test needs Docker-managed PostgreSQL and Redis"
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def kv_cache(fake_redis: FakeRedis) -> KeyValueCache:
    """KeyValueCache over the in-memory Redis with a short timeout."""
    return KeyValueCache(fake_redis, op_timeout=0.05, scan_timeout=0.2)


@pytest.fixture
def registry() -> PolicyRegistry:
    return PolicyRegistry.default(short_ttl=120, medium_ttl=300)


@pytest.fixture
def store(kv_cache: KeyValueCache, registry: PolicyRegistry) -> ReadThroughStore:
    return ReadThroughStore(kv_cache, registry)
