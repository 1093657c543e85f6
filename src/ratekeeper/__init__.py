"""Distributed admission control over Redis.

Two independent limits, each enforced by an atomic Lua script so that any
number of processes sharing one Redis agree on every decision:

1. **Rate limit** (``Limit``): requests per period with a burst allowance,
   using GCRA (a sliding window kept as one timestamp per key).
   ``allow_n`` admits all-or-nothing, ``allow_at_most`` admits whatever
   fits.

2. **Concurrency limit** (``ConcurrencyLimit``): at most N holders per
   key.  Slots are released explicitly or lapse after
   ``request_max_duration`` if the holder disappears.

Checks on many keys can be batched with ``Limiter.pipeline()`` into one
round trip per script.  Timing always uses the Redis server clock.
"""

from .errors import (
    InvalidArgument,
    LimiterError,
    ProtocolViolation,
    TooManyRetries,
    TransportError,
)
from .infra.logging import setup_logging
from .limiter import Limiter, build_limiter
from .models import (
    NO_RETRY,
    ConcurrencyLimit,
    ConcurrencyResult,
    Limit,
    Result,
    per_hour,
    per_minute,
    per_second,
)
from .pipeline import MAX_SCRIPT_RETRIES, PendingResult, Pipeline
from .scripts import AtomicProcedure, ProcedureRegistry

__all__ = [
    "AtomicProcedure",
    "ConcurrencyLimit",
    "ConcurrencyResult",
    "InvalidArgument",
    "Limit",
    "Limiter",
    "LimiterError",
    "MAX_SCRIPT_RETRIES",
    "NO_RETRY",
    "PendingResult",
    "Pipeline",
    "ProcedureRegistry",
    "ProtocolViolation",
    "Result",
    "TooManyRetries",
    "TransportError",
    "build_limiter",
    "per_hour",
    "per_minute",
    "per_second",
    "setup_logging",
]
