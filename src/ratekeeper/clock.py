"""Store-side clock.

Every admission decision is timed with Redis ``TIME`` so that clients with
skewed clocks still agree on one timeline.  The Lua fragments below are
spliced into the scripts in ``scripts.py``.
"""

from __future__ import annotations

from datetime import datetime, timezone

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .errors import TransportError

# Seconds since 2017-01-01 UTC.  Rebasing the epoch keeps microsecond
# precision inside a Lua double.
LUA_NOW_SECONDS = """
local now_parts = redis.call("TIME")
local now = (tonumber(now_parts[1]) - 1483228800) + tonumber(now_parts[2]) / 1000000
"""

# Whole milliseconds since the Unix epoch.
LUA_NOW_MILLIS = """
local now_parts = redis.call("TIME")
local now = tonumber(now_parts[1]) * 1000 + math.floor(tonumber(now_parts[2]) / 1000)
"""


async def server_time(redis: Redis) -> datetime:
    """Return the current time according to the Redis server."""
    try:
        seconds, micros = await redis.time()
    except RedisError as exc:
        raise TransportError(f"TIME failed: {exc}") from exc
    return datetime.fromtimestamp(int(seconds) + int(micros) / 1_000_000, tz=timezone.utc)
