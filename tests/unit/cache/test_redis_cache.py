"""Tests for the fault-tolerant key/value cache."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock

import orjson
import pytest

from crust.cache.redis import KeyValueCache, close_redis
from tests.fakes import FakeClock, FakeRedis


class TestBasicOperations:
    """Round trips against a healthy cache."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, kv_cache: KeyValueCache) -> None:
        assert await kv_cache.set("k", b"v", ttl=60) is True
        assert await kv_cache.get("k") == b"v"

    @pytest.mark.asyncio
    async def test_missing_key_is_none(self, kv_cache: KeyValueCache) -> None:
        assert await kv_cache.get("absent") is None

    @pytest.mark.asyncio
    async def test_value_expires_after_ttl(
        self, kv_cache: KeyValueCache, clock: FakeClock
    ) -> None:
        """A value is gone once its TTL has elapsed."""
        await kv_cache.set("k", b"v", ttl=120)

        clock.advance(119)
        assert await kv_cache.get("k") == b"v"

        clock.advance(1)
        assert await kv_cache.get("k") is None

    @pytest.mark.asyncio
    async def test_no_ttl_is_permanent(
        self, kv_cache: KeyValueCache, fake_redis: FakeRedis, clock: FakeClock
    ) -> None:
        await kv_cache.set("k", b"v", ttl=None)
        clock.advance(10 * 365 * 86400)

        assert await kv_cache.get("k") == b"v"
        assert fake_redis.ttl_of("k") is None

    @pytest.mark.asyncio
    async def test_delete_counts_existing_keys(self, kv_cache: KeyValueCache) -> None:
        await kv_cache.set("a", b"1")
        await kv_cache.set("b", b"2")

        assert await kv_cache.delete("a", "b", "c") == 2
        assert await kv_cache.delete() == 0

    @pytest.mark.asyncio
    async def test_exists_and_increment(self, kv_cache: KeyValueCache) -> None:
        assert await kv_cache.exists("counter") is False
        assert await kv_cache.increment("counter") == 1
        assert await kv_cache.increment("counter", 4) == 5
        assert await kv_cache.exists("counter") is True

    @pytest.mark.asyncio
    async def test_set_if_absent(self, kv_cache: KeyValueCache) -> None:
        """Only the first claim succeeds."""
        assert await kv_cache.set_if_absent("marker", b"1", ttl=60) is True
        assert await kv_cache.set_if_absent("marker", b"1", ttl=60) is False

    @pytest.mark.asyncio
    async def test_ping(self, kv_cache: KeyValueCache) -> None:
        assert await kv_cache.ping() is True


class TestDeletePattern:
    """Tests for glob deletion."""

    @pytest.mark.asyncio
    async def test_deletes_only_matching_keys(
        self, kv_cache: KeyValueCache, fake_redis: FakeRedis
    ) -> None:
        for key in ("crust:products:all", "crust:products:available", "crust:coupons:all"):
            await kv_cache.set(key, b"[]")

        deleted = await kv_cache.delete_pattern("crust:products:*")

        assert deleted == 2
        assert fake_redis.keys_matching("crust:*") == ["crust:coupons:all"]

    @pytest.mark.asyncio
    async def test_deletes_in_batches(self, kv_cache: KeyValueCache, fake_redis: FakeRedis) -> None:
        """More keys than one batch are all removed."""
        for i in range(1203):
            fake_redis._do_set(f"crust:product:id:{i}", b"{}")

        assert await kv_cache.delete_pattern("crust:product:*") == 1203
        assert fake_redis.calls.count("delete") == 3


class TestCapturedFailures:
    """The cache never raises; failures degrade to misses and no-ops."""

    @pytest.fixture
    def broken(self, fake_redis: FakeRedis) -> FakeRedis:
        fake_redis.fail = True
        return fake_redis

    @pytest.mark.asyncio
    async def test_get_is_a_miss(self, kv_cache: KeyValueCache, broken: FakeRedis) -> None:
        assert await kv_cache.get("k") is None

    @pytest.mark.asyncio
    async def test_set_reports_false(self, kv_cache: KeyValueCache, broken: FakeRedis) -> None:
        assert await kv_cache.set("k", b"v", ttl=60) is False

    @pytest.mark.asyncio
    async def test_other_operations_fall_back(
        self, kv_cache: KeyValueCache, broken: FakeRedis
    ) -> None:
        assert await kv_cache.delete("k") == 0
        assert await kv_cache.delete_pattern("crust:*") == 0
        assert await kv_cache.exists("k") is False
        assert await kv_cache.increment("k") is None
        assert await kv_cache.set_if_absent("k", b"1") is None
        assert await kv_cache.ping() is False
        assert await kv_cache.members("idx") == set()
        assert await kv_cache.push_record("dlq", b"x", 10) is False
        assert await kv_cache.pop_record("dlq") is None
        assert await kv_cache.list_length("dlq") == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_as_warning(
        self,
        kv_cache: KeyValueCache,
        broken: FakeRedis,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="crust.cache.redis"):
            await kv_cache.get("crust:business:info")

        assert len(caplog.records) == 1
        assert "Cache unavailable" in caplog.records[0].getMessage()
        assert "crust:business:info" in caplog.records[0].getMessage()

    @pytest.mark.asyncio
    async def test_slow_cache_times_out(self, kv_cache: KeyValueCache, fake_redis: FakeRedis) -> None:
        """A call slower than the operation timeout is treated as a miss."""
        fake_redis._do_set("k", b"v")
        fake_redis.delay = 0.5

        assert await kv_cache.get("k") is None

    @pytest.mark.asyncio
    async def test_unexpected_os_error_is_captured(self) -> None:
        client = AsyncMock()
        client.get.side_effect = OSError("network unreachable")
        cache = KeyValueCache(client)

        assert await cache.get("k") is None


class TestGetOrSet:
    """Tests for get-or-compute."""

    @pytest.mark.asyncio
    async def test_miss_computes_and_stores(
        self, kv_cache: KeyValueCache, fake_redis: FakeRedis
    ) -> None:
        compute = AsyncMock(return_value={"name": "Margherita"})

        value = await kv_cache.get_or_set("k", 300, compute)

        assert value == {"name": "Margherita"}
        compute.assert_awaited_once()
        assert orjson.loads(fake_redis.data["k"]) == {"name": "Margherita"}
        assert fake_redis.ttl_of("k") == 300

    @pytest.mark.asyncio
    async def test_hit_skips_compute(self, kv_cache: KeyValueCache) -> None:
        await kv_cache.set("k", orjson.dumps([1, 2]))
        compute = AsyncMock(return_value=[9])

        assert await kv_cache.get_or_set("k", 300, compute) == [1, 2]
        compute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self, kv_cache: KeyValueCache, fake_redis: FakeRedis) -> None:
        compute = AsyncMock(return_value=None)

        assert await kv_cache.get_or_set("k", 300, compute) is None
        assert "k" not in fake_redis.data

    @pytest.mark.asyncio
    async def test_undecodable_entry_is_recomputed(
        self, kv_cache: KeyValueCache, fake_redis: FakeRedis
    ) -> None:
        fake_redis._do_set("k", b"{not json")
        compute = AsyncMock(return_value={"ok": True})

        assert await kv_cache.get_or_set("k", 60, compute) == {"ok": True}
        assert orjson.loads(fake_redis.data["k"]) == {"ok": True}

    @pytest.mark.asyncio
    async def test_unreachable_cache_still_returns_value(
        self, kv_cache: KeyValueCache, fake_redis: FakeRedis
    ) -> None:
        """With the cache down every call computes and returns the fresh value."""
        fake_redis.fail = True
        compute = AsyncMock(side_effect=[{"n": 1}, {"n": 2}])

        assert await kv_cache.get_or_set("k", 60, compute) == {"n": 1}
        assert await kv_cache.get_or_set("k", 60, compute) == {"n": 2}

    @pytest.mark.asyncio
    async def test_compute_errors_propagate(self, kv_cache: KeyValueCache) -> None:
        compute = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError, match="db down"):
            await kv_cache.get_or_set("k", 60, compute)


class TestIndexAndRecords:
    """Tests for index sets and capped record lists."""

    @pytest.mark.asyncio
    async def test_track_adds_member_with_ttl(
        self, kv_cache: KeyValueCache, fake_redis: FakeRedis
    ) -> None:
        await kv_cache.track("idx", "crust:products:all", ttl=300)
        await kv_cache.track("idx", "crust:products:available", ttl=300)

        assert await kv_cache.members("idx") == {"crust:products:all", "crust:products:available"}
        assert fake_redis.ttl_of("idx") == 300

    @pytest.mark.asyncio
    async def test_push_record_trims_to_max(self, kv_cache: KeyValueCache) -> None:
        for i in range(5):
            assert await kv_cache.push_record("dlq", str(i).encode(), max_len=3) is True

        assert await kv_cache.list_length("dlq") == 3
        # oldest surviving record first
        assert await kv_cache.pop_record("dlq") == b"2"
        assert await kv_cache.pop_record("dlq") == b"3"
        assert await kv_cache.pop_record("dlq") == b"4"
        assert await kv_cache.pop_record("dlq") is None


@pytest.mark.asyncio
async def test_close_redis_closes_client(fake_redis: FakeRedis) -> None:
    await close_redis(fake_redis)
    assert fake_redis.closed is True
