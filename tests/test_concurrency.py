"""Tests for concurrency slots: take, release, expiry, take_many."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from ratekeeper import NO_RETRY, ConcurrencyLimit, Limiter

_FIVE_SECONDS = timedelta(seconds=5)


# =========================================================================
# take
# =========================================================================


class TestTake:
    @pytest.mark.asyncio
    async def test_same_request_id_twice(self, limiter: Limiter):
        one = ConcurrencyLimit(max=1, request_max_duration=_FIVE_SECONDS)

        r1 = await limiter.take("test_id", "reqA", one)
        assert r1.allowed is True
        assert r1.used == 1
        assert r1.remaining == 0
        assert r1.retry_after == NO_RETRY
        assert r1.key == "test_id"
        assert r1.limit is one

        r2 = await limiter.take("test_id", "reqA", one)
        assert r2.allowed is False
        assert r2.used == 1
        assert r2.remaining == 0
        assert r2.retry_after == timedelta(seconds=1)

        two = ConcurrencyLimit(max=2, request_max_duration=_FIVE_SECONDS)
        r3 = await limiter.take("test_id", "reqA", two)
        assert r3.allowed is True
        assert r3.used == 2
        assert r3.remaining == 0

    @pytest.mark.asyncio
    async def test_different_request_id_denied_at_capacity(self, limiter: Limiter):
        one = ConcurrencyLimit(max=1, request_max_duration=_FIVE_SECONDS)

        assert (await limiter.take("k", "reqA", one)).allowed is True

        res = await limiter.take("k", "reqB", one)
        assert res.allowed is False
        assert res.used == 1

    @pytest.mark.asyncio
    async def test_denied_beyond_max(self, limiter: Limiter):
        three = ConcurrencyLimit(max=3, request_max_duration=_FIVE_SECONDS)
        for i in range(3):
            res = await limiter.take("k", f"req{i}", three)
            assert res.allowed is True
            assert res.used == i + 1
            assert res.remaining == 2 - i

        res = await limiter.take("k", "req3", three)
        assert res.allowed is False
        assert res.used == 3
        assert res.remaining == 0

    @pytest.mark.asyncio
    async def test_zero_max_always_denied(self, limiter: Limiter):
        res = await limiter.take("closed", "reqA", ConcurrencyLimit(max=0))
        assert res.allowed is False
        assert res.used == 0

    @pytest.mark.asyncio
    async def test_retry_hint_capped_by_duration(self, limiter: Limiter):
        short = ConcurrencyLimit(max=1, request_max_duration=timedelta(milliseconds=300))
        await limiter.take("k", "reqA", short)
        res = await limiter.take("k", "reqB", short)
        assert res.retry_after == timedelta(milliseconds=300)

    @pytest.mark.asyncio
    async def test_slot_hash_layout(self, limiter: Limiter, redis):
        limit = ConcurrencyLimit(max=2, request_max_duration=timedelta(seconds=2))
        await limiter.take("layout", "reqA", limit)

        entries = await redis.hgetall("concurrency:layout")
        assert list(entries) == ["reqA"]
        ttl = await redis.pttl("concurrency:layout")
        assert 0 < ttl <= 10_000


# =========================================================================
# release
# =========================================================================


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_frees_slot(self, limiter: Limiter):
        one = ConcurrencyLimit(max=1, request_max_duration=_FIVE_SECONDS)
        await limiter.take("k", "reqA", one)
        assert (await limiter.take("k", "reqB", one)).allowed is False

        await limiter.release("k", "reqA", one)

        res = await limiter.take("k", "reqB", one)
        assert res.allowed is True
        assert res.used == 1

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, limiter: Limiter):
        one = ConcurrencyLimit(max=1, request_max_duration=_FIVE_SECONDS)
        await limiter.release("k", "never-taken", one)
        await limiter.take("k", "reqA", one)
        await limiter.release("k", "reqA", one)
        await limiter.release("k", "reqA", one)
        assert (await limiter.take("k", "reqB", one)).allowed is True

    @pytest.mark.asyncio
    async def test_release_only_touches_own_entry(self, limiter: Limiter, redis):
        two = ConcurrencyLimit(max=2, request_max_duration=_FIVE_SECONDS)
        await limiter.take("k", "reqA", two)
        await limiter.take("k", "reqB", two)

        await limiter.release("k", "reqA", two)

        assert await redis.hkeys("concurrency:k") == ["reqB"]


# =========================================================================
# Expiry
# =========================================================================


class TestExpiry:
    @pytest.mark.asyncio
    async def test_unreleased_slot_lapses(self, limiter: Limiter, redis):
        short = ConcurrencyLimit(max=1, request_max_duration=timedelta(milliseconds=200))

        assert (await limiter.take("k", "reqA", short)).allowed is True
        assert (await limiter.take("k", "reqB", short)).allowed is False

        await asyncio.sleep(0.35)

        res = await limiter.take("k", "reqB", short)
        assert res.allowed is True
        assert res.used == 1
        # The lapsed holder was reaped while counting.
        assert await redis.hexists("concurrency:k", "reqA") == 0


# =========================================================================
# take_many / release_many
# =========================================================================


class TestMulti:
    @pytest.mark.asyncio
    async def test_keys_decided_independently(self, limiter: Limiter):
        one = ConcurrencyLimit(max=1, request_max_duration=_FIVE_SECONDS)
        await limiter.take("busy", "other", one)

        results = await limiter.take_many("reqA", {"busy": one, "idle": one})

        assert results["busy"].allowed is False
        assert results["busy"].key == "busy"
        assert results["idle"].allowed is True
        assert results["idle"].key == "idle"

    @pytest.mark.asyncio
    async def test_release_many(self, limiter: Limiter, redis):
        one = ConcurrencyLimit(max=1, request_max_duration=_FIVE_SECONDS)
        limits = {"a": one, "b": one}
        await limiter.take_many("reqA", limits)

        await limiter.release_many("reqA", limits)

        assert await redis.hlen("concurrency:a") == 0
        assert await redis.hlen("concurrency:b") == 0

    @pytest.mark.asyncio
    async def test_empty_mappings(self, limiter: Limiter):
        assert await limiter.take_many("reqA", {}) == {}
        await limiter.release_many("reqA", {})

    @pytest.mark.asyncio
    async def test_concurrent_takers_never_exceed_max(self, limiter: Limiter):
        three = ConcurrencyLimit(max=3, request_max_duration=_FIVE_SECONDS)

        results = await asyncio.gather(
            *(limiter.take("race", f"req{i}", three) for i in range(20))
        )

        assert sum(r.allowed for r in results) == 3
