"""Lua procedures and the registry that keeps them loaded in Redis.

Scripts are invoked by SHA1 (``EVALSHA``).  Redis may forget them at any
time (restart, ``SCRIPT FLUSH``, failover), so the batch executor checks
``SCRIPT EXISTS`` on every round trip and asks the registry to reload when
a script has gone missing.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Sequence

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import RedisError

from .clock import LUA_NOW_MILLIS, LUA_NOW_SECONDS
from .errors import TransportError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lua scripts
# ---------------------------------------------------------------------------

# GCRA over a theoretical arrival time (TAT) stored as seconds since 2017.
# KEYS[1] = bucket key
# ARGV[1] = burst, ARGV[2] = rate, ARGV[3] = period (seconds),
# ARGV[4] = units requested, ARGV[5] = "1" to admit as many as fit.
# Returns {allowed, remaining, retry_after, reset_after}; the last two are
# seconds encoded as strings, retry_after is "-1" when nothing was refused.
_LUA_RATE_TAKE = (
    """
local key = KEYS[1]
local burst = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local period = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local partial = ARGV[5] == "1"
"""
    + LUA_NOW_SECONDS
    + """
local interval = period / rate
local capacity = burst * interval

-- Outstanding debt in seconds; all later arithmetic is relative to now.
local tat = tonumber(redis.call("GET", key) or now)
local diff = math.max(tat - now, 0)

-- Whole units fitting in ``slack`` seconds, never negative.  The epsilon
-- absorbs float error from the division.
local function units(slack)
    local n = math.floor(slack / interval + 1e-9)
    if n < 0 then
        return 0
    end
    return n
end

local available = units(capacity - diff)

if cost == 0 then
    return {0, available, "-1", tostring(diff)}
end

local admit = cost
if admit > available then
    if not partial then
        local retry_after = math.max(diff + cost * interval - capacity, 0)
        return {0, available, tostring(retry_after), tostring(diff)}
    end
    admit = available
end

if admit == 0 then
    local retry_after = math.max(diff + interval - capacity, 0)
    return {0, 0, tostring(retry_after), tostring(diff)}
end

local reset_after = diff + admit * interval
redis.call("SET", key, string.format("%.17g", now + reset_after), "PX", string.format("%d", math.ceil(reset_after * 1000)))

local retry_after = -1
if admit < cost then
    retry_after = math.max(reset_after + interval - capacity, 0)
end
return {admit, units(capacity - reset_after), tostring(retry_after), tostring(reset_after)}
"""
)

# Hash of request id -> slot expiry (ms since epoch).  Expired entries are
# deleted while counting.
# KEYS[1] = slot hash key
# ARGV[1] = request id, ARGV[2] = max holders, ARGV[3] = max duration (ms).
# Returns {allowed (0|1), used}.
_LUA_CONCURRENCY_TAKE = (
    """
local key = KEYS[1]
local request_id = ARGV[1]
local limit = tonumber(ARGV[2])
local duration = tonumber(ARGV[3])
"""
    + LUA_NOW_MILLIS
    + """
local used = 0
local entries = redis.call("HGETALL", key)
for i = 1, #entries, 2 do
    if tonumber(entries[i + 1]) < now then
        redis.call("HDEL", key, entries[i])
    else
        used = used + 1
    end
end

if used >= limit then
    return {0, used}
end

redis.call("HSET", key, request_id, string.format("%d", now + duration))
redis.call("PEXPIRE", key, string.format("%d", 5 * duration))
return {1, used + 1}
"""
)


# ---------------------------------------------------------------------------
# Procedures
# ---------------------------------------------------------------------------


class AtomicProcedure:
    """A Lua script addressed by the SHA1 of its source."""

    def __init__(self, name: str, source: str) -> None:
        self.name = name
        self.source = source
        self.sha = hashlib.sha1(source.encode("utf-8")).hexdigest()

    def queue(
        self, pipe: Pipeline, keys: Sequence[str], args: Sequence[object]
    ) -> None:
        """Append an ``EVALSHA`` of this script to ``pipe``."""
        pipe.evalsha(self.sha, len(keys), *keys, *args)

    async def load(self, redis: Redis) -> None:
        sha = await redis.script_load(self.source)
        if sha != self.sha:
            logger.warning(
                "Script %s loaded as %s, expected %s", self.name, sha, self.sha
            )
            self.sha = sha

    def __repr__(self) -> str:
        return f"AtomicProcedure({self.name!r}, sha={self.sha[:12]})"


class ProcedureRegistry:
    """The limiter's scripts plus their load bookkeeping.

    ``generation`` increases after every successful load.  Callers that
    saw a script missing pass the generation they observed to
    ``reload``; if someone else already reloaded since then the call is a
    no-op, so a burst of callers hitting the same eviction loads once.
    """

    def __init__(self) -> None:
        self.rate_take = AtomicProcedure("rate_take", _LUA_RATE_TAKE)
        self.concurrency_take = AtomicProcedure(
            "concurrency_take", _LUA_CONCURRENCY_TAKE
        )
        self._lock = asyncio.Lock()
        self._generation = 0

    @property
    def procedures(self) -> tuple[AtomicProcedure, ...]:
        return (self.rate_take, self.concurrency_take)

    @property
    def generation(self) -> int:
        return self._generation

    async def load(self, redis: Redis) -> None:
        """Register every script with Redis."""
        try:
            for procedure in self.procedures:
                await procedure.load(redis)
        except RedisError as exc:
            raise TransportError(f"SCRIPT LOAD failed: {exc}") from exc
        self._generation += 1
        logger.info(
            "Loaded %d scripts into Redis (generation %d)",
            len(self.procedures),
            self._generation,
        )

    async def reload(self, redis: Redis, seen_generation: int) -> None:
        """Load again unless a load already happened after ``seen_generation``."""
        async with self._lock:
            if self._generation != seen_generation:
                logger.debug(
                    "Scripts already reloaded (generation %d > %d)",
                    self._generation,
                    seen_generation,
                )
                return
            await self.load(redis)
