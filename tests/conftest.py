"""Shared fixtures.

Tests run against a real Redis when ``TEST_REDIS_URL`` is set (the
database is flushed, so point it at a scratch instance) and against an
in-process ``fakeredis`` server with Lua support otherwise.
"""

import os
from collections.abc import AsyncGenerator

import fakeredis
import pytest_asyncio
from redis.asyncio import Redis

from ratekeeper import Limiter


@pytest_asyncio.fixture
async def redis() -> AsyncGenerator[Redis, None]:
    url = os.environ.get("TEST_REDIS_URL")
    if url:
        client: Redis = Redis.from_url(url, decode_responses=True)
    else:
        client = fakeredis.FakeAsyncRedis(decode_responses=True)
    await client.flushdb()
    await client.script_flush()
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def limiter(redis: Redis) -> Limiter:
    ll = Limiter(redis)
    await ll.load_scripts()
    return ll
