"""Limiter: public API and factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from datetime import datetime

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ratekeeper.configs.config import AppConfig, get_app_config
from ratekeeper.configs.system import LimiterConfig
from ratekeeper.infra.logging import setup_logging
from ratekeeper.infra.redis import build_redis
from ratekeeper.infra.telemetry import ATTR_BATCH_SIZE, SPAN_SLOTS_RELEASE, tracer

from .clock import server_time
from .errors import TransportError
from .models import ConcurrencyLimit, ConcurrencyResult, Limit, Result
from .pipeline import Pipeline
from .scripts import ProcedureRegistry

logger = logging.getLogger(__name__)


class Limiter:
    """Distributed rate and concurrency limiter backed by Redis.

    Any number of processes sharing one Redis enforce the same limits.
    There is no client-side locking: each check is a single Lua script
    invocation, which Redis runs atomically.

    Usage::

        limiter = Limiter(redis)

        res = await limiter.allow("ip:1.2.3.4", per_second(10))
        if not res.allowed:
            ...  # reject, retry after res.retry_after

        slot = await limiter.take("tenant:acme", request_id, ConcurrencyLimit(max=4))
        if slot.allowed:
            try:
                ...
            finally:
                await limiter.release("tenant:acme", request_id, slot.limit)

    Every call may block on Redis; wrap it in ``asyncio.timeout`` to bound
    it.  A call that was cancelled or timed out may or may not have been
    applied.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        rate_prefix: str = "rate:",
        concurrency_prefix: str = "concurrency:",
        registry: ProcedureRegistry | None = None,
    ) -> None:
        self._redis = redis
        self._rate_prefix = rate_prefix
        self._concurrency_prefix = concurrency_prefix
        self._registry = registry if registry is not None else ProcedureRegistry()

    @classmethod
    def from_config(cls, redis: Redis, config: LimiterConfig) -> Limiter:
        return cls(
            redis,
            rate_prefix=config.rate_key_prefix,
            concurrency_prefix=config.concurrency_key_prefix,
        )

    @property
    def registry(self) -> ProcedureRegistry:
        return self._registry

    def pipeline(self) -> Pipeline:
        """Start a batch of checks sent together by ``Pipeline.execute``."""
        return Pipeline(
            self._redis,
            self._registry,
            rate_prefix=self._rate_prefix,
            concurrency_prefix=self._concurrency_prefix,
        )

    async def load_scripts(self) -> None:
        """Register the Lua scripts with Redis.

        Optional: a batch that finds its script missing loads it itself.
        """
        await self._registry.load(self._redis)

    async def server_time(self) -> datetime:
        """Current time on the Redis server, the clock all limits run on."""
        return await server_time(self._redis)

    # -----------------------------------------------------------------
    # Rate limiting
    # -----------------------------------------------------------------

    async def allow(self, key: str, limit: Limit) -> Result:
        """Admit one unit on ``key`` if the bucket has room."""
        return await self.allow_n(key, limit, 1)

    async def allow_n(self, key: str, limit: Limit, n: int) -> Result:
        """Admit all ``n`` units or none of them.

        ``n == 0`` only reports the current state.
        """
        pipe = self.pipeline()
        handle = pipe.allow_n(key, limit, n)
        await pipe.execute()
        return handle.result()

    async def allow_at_most(self, key: str, limit: Limit, n: int) -> Result:
        """Admit as many of ``n`` units as currently fit."""
        pipe = self.pipeline()
        handle = pipe.allow_at_most(key, limit, n)
        await pipe.execute()
        return handle.result()

    async def reset(self, key: str) -> None:
        """Forget all consumed capacity of the rate-limit bucket ``key``."""
        try:
            await self._redis.delete(self._rate_prefix + key)
        except RedisError as exc:
            raise TransportError(f"reset of {key!r} failed: {exc}") from exc

    # -----------------------------------------------------------------
    # Concurrency limiting
    # -----------------------------------------------------------------

    async def take(
        self, key: str, request_id: str, limit: ConcurrencyLimit
    ) -> ConcurrencyResult:
        """Claim one slot on ``key`` for ``request_id``."""
        results = await self.take_many(request_id, {key: limit})
        return results[key]

    async def release(
        self, key: str, request_id: str, limit: ConcurrencyLimit
    ) -> None:
        """Give back the slot ``request_id`` holds on ``key``.

        Releasing a slot that is not held (never taken, already released,
        or expired) is a no-op.
        """
        await self.release_many(request_id, {key: limit})

    async def take_many(
        self, request_id: str, limits: Mapping[str, ConcurrencyLimit]
    ) -> dict[str, ConcurrencyResult]:
        """Claim a slot for ``request_id`` on every key of ``limits``.

        Each key is decided independently; some may be allowed while
        others are refused.
        """
        if not limits:
            return {}
        pipe = self.pipeline()
        handles = {
            key: pipe.take(key, request_id, limit) for key, limit in limits.items()
        }
        await pipe.execute()
        return {key: handle.result() for key, handle in handles.items()}

    async def release_many(
        self, request_id: str, limits: Mapping[str, ConcurrencyLimit]
    ) -> None:
        """Give back the slots ``request_id`` holds on every key of ``limits``."""
        if not limits:
            return
        with tracer.start_as_current_span(SPAN_SLOTS_RELEASE) as span:
            span.set_attribute(ATTR_BATCH_SIZE, len(limits))
            pipe = self._redis.pipeline(transaction=False)
            for key in limits:
                pipe.hdel(self._concurrency_prefix + key, request_id)
            try:
                await pipe.execute()
            except RedisError as exc:
                raise TransportError(
                    f"release of {request_id!r} failed: {exc}"
                ) from exc
        logger.debug("Released %s on %d keys", request_id, len(limits))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


@asynccontextmanager
async def build_limiter(
    config: AppConfig | None = None,
) -> AsyncGenerator[Limiter, None]:
    """Connect to Redis and yield a ready ``Limiter``; disconnect on exit.

    With ``config.logging.configure_root`` set, the root logger is set up
    from ``config.logging`` first (see ``setup_logging``).
    """
    if config is None:
        config = get_app_config()
    if config.logging.configure_root:
        setup_logging(config.logging)

    async with build_redis(config.redis) as redis:
        limiter = Limiter.from_config(redis, config.limiter)
        if config.limiter.load_scripts_on_start:
            await limiter.load_scripts()
        logger.info(
            "Limiter ready (rate prefix=%r, concurrency prefix=%r)",
            config.limiter.rate_key_prefix,
            config.limiter.concurrency_key_prefix,
        )
        yield limiter
