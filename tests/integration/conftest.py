"""Fixtures backed by real PostgreSQL and Redis containers.

Every test in this package is skipped when no Docker daemon is reachable.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio
import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from crust.cache.redis import KeyValueCache
from crust.persistence.db import Database
from crust.persistence.tables import Base
from tests.integration.docker_utils import ContainerHandle, connect, container

STARTUP_TIMEOUT = 30.0


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if "tests/integration" in str(item.fspath).replace("\\", "/"):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def docker_client():
    try:
        client = connect()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def postgres_container(docker_client) -> Iterator[ContainerHandle]:
    env = {"POSTGRES_USER": "crust", "POSTGRES_PASSWORD": "crust", "POSTGRES_DB": "crust"}
    with container(docker_client, "postgres:16-alpine", env=env, ports={"5432/tcp": None}) as handle:
        yield handle


@pytest.fixture(scope="session")
def redis_container(docker_client) -> Iterator[ContainerHandle]:
    with container(docker_client, "redis:7-alpine", ports={"6379/tcp": None}) as handle:
        yield handle


@pytest.fixture(scope="session")
def database_url(postgres_container: ContainerHandle) -> str:
    port = postgres_container.host_port(5432)
    return f"postgresql+asyncpg://crust:crust@{postgres_container.host}:{port}/crust"


@pytest.fixture(scope="session")
def redis_url(redis_container: ContainerHandle) -> str:
    return f"redis://{redis_container.host}:{redis_container.host_port(6379)}/0"


async def _wait_for_engine(engine: AsyncEngine) -> None:
    deadline = time.monotonic() + STARTUP_TIMEOUT
    while True:
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return
        except Exception:
            if time.monotonic() > deadline:
                raise
            await asyncio.sleep(0.5)


async def _wait_for_redis(client: aioredis.Redis) -> None:
    deadline = time.monotonic() + STARTUP_TIMEOUT
    while True:
        try:
            await client.ping()
            return
        except Exception:
            if time.monotonic() > deadline:
                raise
            await asyncio.sleep(0.5)


@pytest_asyncio.fixture
async def db(database_url: str) -> AsyncIterator[Database]:
    """A Database over a freshly created schema, dropped after the test."""
    engine = create_async_engine(database_url)
    await _wait_for_engine(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield Database(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def redis_client(redis_url: str) -> AsyncIterator[aioredis.Redis]:
    client = aioredis.from_url(redis_url)
    await _wait_for_redis(client)
    yield client
    await client.flushdb()
    await client.aclose()


@pytest.fixture
def real_cache(redis_client: aioredis.Redis) -> KeyValueCache:
    return KeyValueCache(redis_client, op_timeout=2.0, scan_timeout=5.0)
