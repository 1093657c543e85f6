"""Async Redis client lifecycle.

``build_redis`` creates a client, verifies the connection and closes the
client on exit.  Unlike a cache, the limiter has nothing to fall back to
when Redis is unreachable, so a failed ``PING`` raises.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ratekeeper.configs.system import RedisConfig
from ratekeeper.errors import TransportError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def build_redis(config: RedisConfig) -> AsyncGenerator[Redis, None]:
    """Yield a connected Redis client; raise ``TransportError`` if unreachable."""
    timeout = (
        config.socket_timeout.total_seconds()
        if config.socket_timeout is not None
        else None
    )
    client = Redis.from_url(
        config.uri, decode_responses=True, socket_timeout=timeout
    )
    try:
        try:
            await client.ping()
        except RedisError as exc:
            logger.error("Redis unavailable: %s", exc)
            raise TransportError(f"cannot reach Redis: {exc}") from exc
        yield client
    finally:
        await client.aclose()
