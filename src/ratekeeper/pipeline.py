"""Batched admission checks.

A ``Pipeline`` collects any number of rate and concurrency checks and
sends them with one round trip per Lua script.  Each round trip is::

    SCRIPT EXISTS <sha>
    EVALSHA <sha> 1 <key 1> ...
    EVALSHA <sha> 1 <key 2> ...

Every ``EVALSHA`` is atomic on its own; the pipeline only saves round
trips, so keys in a batch never affect each other's outcome.  When Redis
has lost the script (restarted, or flushed its script cache) the affected
calls reply ``NOSCRIPT``; the registry reloads the scripts and only those
calls are sent again, at most ``MAX_SCRIPT_RETRIES`` times.  Calls that
already ran keep their reply, so no key is charged twice.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Generic, TypeVar

from redis.asyncio import Redis
from redis.exceptions import NoScriptError, RedisError

from ratekeeper.infra.metrics import (
    DECISIONS_TOTAL,
    ROUND_TRIP_SECONDS,
    SCRIPT_RELOADS_TOTAL,
)
from ratekeeper.infra.telemetry import (
    ATTR_BATCH_SIZE,
    ATTR_KEY_ERRORS,
    ATTR_PROCEDURE,
    ATTR_RETRY_DEPTH,
    SPAN_BATCH_EXECUTE,
    SPAN_SCRIPTS_RELOAD,
    tracer,
)

from .concurrency import ConcurrencyCheck, parse_take_reply
from .errors import LimiterError, ProtocolViolation, TooManyRetries, TransportError
from .models import ConcurrencyLimit, ConcurrencyResult, Limit, Result
from .rate import RateCheck, parse_rate_reply
from .scripts import AtomicProcedure, ProcedureRegistry

logger = logging.getLogger(__name__)

MAX_SCRIPT_RETRIES = 10

T = TypeVar("T")

# (keys, args) for one EVALSHA
_Call = tuple[Sequence[str], Sequence[object]]


class PendingResult(Generic[T]):
    """Deferred outcome of one queued check, resolved by ``Pipeline.execute``."""

    __slots__ = ("key", "_done", "_value", "_error")

    def __init__(self, key: str) -> None:
        self.key = key
        self._done = False
        self._value: T | None = None
        self._error: LimiterError | None = None

    def done(self) -> bool:
        return self._done

    def result(self) -> T:
        """Return the outcome, or raise the error this key failed with."""
        if not self._done:
            raise LimiterError(f"check for {self.key!r} has not been executed yet")
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore[return-value]

    def _resolve(self, value: T) -> None:
        self._value = value
        self._done = True

    def _fail(self, error: LimiterError) -> None:
        self._error = error
        self._done = True

    def __repr__(self) -> str:
        if not self._done:
            state = "pending"
        elif self._error is not None:
            state = f"error={self._error!r}"
        else:
            state = f"value={self._value!r}"
        return f"<PendingResult {self.key!r} {state}>"


class Pipeline:
    """Builder for a batch of checks.

    Usage::

        pipe = limiter.pipeline()
        per_ip = pipe.allow(f"ip:{ip}", per_second(10))
        per_tenant = pipe.allow(f"tenant:{tenant}", per_minute(600))
        slot = pipe.take(f"tenant:{tenant}", request_id, ConcurrencyLimit(max=4))
        await pipe.execute()

        if per_ip.result().allowed and per_tenant.result().allowed: ...
    """

    def __init__(
        self,
        redis: Redis,
        registry: ProcedureRegistry,
        *,
        rate_prefix: str,
        concurrency_prefix: str,
    ) -> None:
        self._redis = redis
        self._registry = registry
        self._rate_prefix = rate_prefix
        self._concurrency_prefix = concurrency_prefix
        self._rate: list[tuple[RateCheck, PendingResult[Result]]] = []
        self._concurrency: list[
            tuple[ConcurrencyCheck, PendingResult[ConcurrencyResult]]
        ] = []

    def __len__(self) -> int:
        return len(self._rate) + len(self._concurrency)

    # -----------------------------------------------------------------
    # Queueing
    # -----------------------------------------------------------------

    def allow(self, key: str, limit: Limit) -> PendingResult[Result]:
        return self.allow_n(key, limit, 1)

    def allow_n(self, key: str, limit: Limit, n: int) -> PendingResult[Result]:
        """Queue an all-or-nothing request for ``n`` units."""
        return self._queue_rate(RateCheck(key, limit, n, partial=False))

    def allow_at_most(self, key: str, limit: Limit, n: int) -> PendingResult[Result]:
        """Queue a request for up to ``n`` units, admitting whatever fits."""
        return self._queue_rate(RateCheck(key, limit, n, partial=True))

    def take(
        self, key: str, request_id: str, limit: ConcurrencyLimit
    ) -> PendingResult[ConcurrencyResult]:
        """Queue a request for one concurrency slot held by ``request_id``."""
        handle: PendingResult[ConcurrencyResult] = PendingResult(key)
        self._concurrency.append((ConcurrencyCheck(key, request_id, limit), handle))
        return handle

    def _queue_rate(self, check: RateCheck) -> PendingResult[Result]:
        handle: PendingResult[Result] = PendingResult(check.key)
        self._rate.append((check, handle))
        return handle

    # -----------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------

    async def execute(self) -> None:
        """Send every queued check and resolve its handle.

        Errors confined to one key resolve only that key's handle.  A
        failure of a whole round trip resolves every not-yet-resolved
        handle with the same error and is raised from here.  The queue is
        emptied either way.
        """
        rate, self._rate = self._rate, []
        concurrency, self._concurrency = self._concurrency, []
        try:
            if rate:
                await self._execute_rate(rate)
            if concurrency:
                await self._execute_concurrency(concurrency)
        except LimiterError as exc:
            for _, handle in [*rate, *concurrency]:
                if not handle.done():
                    handle._fail(exc)
            raise

    async def _execute_rate(
        self, entries: list[tuple[RateCheck, PendingResult[Result]]]
    ) -> None:
        procedure = self._registry.rate_take
        calls = [
            ([self._rate_prefix + check.key], check.script_args())
            for check, _ in entries
        ]
        replies = await self._run_batch(procedure, calls)
        for (check, handle), reply in zip(entries, replies):
            try:
                result = parse_rate_reply(check.limit, _raise_if_error(reply))
            except LimiterError as exc:
                DECISIONS_TOTAL.labels(kind="rate", outcome="error").inc()
                handle._fail(exc)
                continue
            DECISIONS_TOTAL.labels(kind="rate", outcome=check.outcome(result)).inc()
            handle._resolve(result)

    async def _execute_concurrency(
        self,
        entries: list[tuple[ConcurrencyCheck, PendingResult[ConcurrencyResult]]],
    ) -> None:
        procedure = self._registry.concurrency_take
        calls = [
            ([self._concurrency_prefix + check.key], check.script_args())
            for check, _ in entries
        ]
        replies = await self._run_batch(procedure, calls)
        for (check, handle), reply in zip(entries, replies):
            try:
                result = parse_take_reply(
                    check.key, check.limit, _raise_if_error(reply)
                )
            except LimiterError as exc:
                DECISIONS_TOTAL.labels(kind="concurrency", outcome="error").inc()
                handle._fail(exc)
                continue
            outcome = "allowed" if result.allowed else "denied"
            DECISIONS_TOTAL.labels(kind="concurrency", outcome=outcome).inc()
            handle._resolve(result)

    # -----------------------------------------------------------------
    # Round trips and the missing-script retry loop
    # -----------------------------------------------------------------

    async def _run_batch(
        self, procedure: AtomicProcedure, calls: list[_Call]
    ) -> list[object]:
        """Run ``calls`` against ``procedure``; reload and resend if it is missing.

        Returns one reply per call, in order.  A reply is either the
        script's return value or the ``RedisError`` that call produced.
        Only calls answered with ``NOSCRIPT`` are sent again; every other
        reply is final, so no key is applied twice.
        """
        replies: list[object] = [None] * len(calls)
        pending = list(range(len(calls)))
        for depth in range(MAX_SCRIPT_RETRIES + 1):
            generation = self._registry.generation
            with tracer.start_as_current_span(SPAN_BATCH_EXECUTE) as span:
                span.set_attribute(ATTR_PROCEDURE, procedure.name)
                span.set_attribute(ATTR_BATCH_SIZE, len(pending))
                span.set_attribute(ATTR_RETRY_DEPTH, depth)
                round_replies = await self._round_trip(
                    procedure, [calls[i] for i in pending]
                )
                if not _check_presence(procedure, round_replies[0]):
                    logger.debug("SCRIPT EXISTS reports %s missing", procedure.name)

                missing: list[int] = []
                for index, reply in zip(pending, round_replies[1:]):
                    if isinstance(reply, NoScriptError):
                        missing.append(index)
                    else:
                        replies[index] = reply
                pending = missing

                if not pending:
                    span.set_attribute(
                        ATTR_KEY_ERRORS,
                        sum(isinstance(r, Exception) for r in replies),
                    )
                    logger.debug(
                        "%s batch of %d done at depth %d",
                        procedure.name,
                        len(calls),
                        depth,
                    )
                    return replies

            if depth == MAX_SCRIPT_RETRIES:
                break
            SCRIPT_RELOADS_TOTAL.labels(procedure=procedure.name).inc()
            logger.warning(
                "Script %s missing from Redis for %d of %d calls; "
                "reloading (retry %d of %d)",
                procedure.name,
                len(pending),
                len(calls),
                depth + 1,
                MAX_SCRIPT_RETRIES,
            )
            with tracer.start_as_current_span(SPAN_SCRIPTS_RELOAD) as span:
                span.set_attribute(ATTR_PROCEDURE, procedure.name)
                await self._registry.reload(self._redis, generation)

        raise TooManyRetries(
            f"script {procedure.name} still missing after "
            f"{MAX_SCRIPT_RETRIES} reloads"
        )

    async def _round_trip(
        self, procedure: AtomicProcedure, calls: list[_Call]
    ) -> list[object]:
        pipe = self._redis.pipeline(transaction=False)
        pipe.script_exists(procedure.sha)
        for keys, args in calls:
            procedure.queue(pipe, keys, args)

        start = time.monotonic()
        try:
            replies = await pipe.execute(raise_on_error=False)
        except RedisError as exc:
            raise TransportError(
                f"{procedure.name} round trip failed: {exc}"
            ) from exc
        finally:
            ROUND_TRIP_SECONDS.labels(procedure=procedure.name).observe(
                time.monotonic() - start
            )

        if len(replies) != len(calls) + 1:
            raise ProtocolViolation(
                f"expected {len(calls) + 1} replies from {procedure.name} "
                f"batch, got {len(replies)}"
            )
        return replies


def _check_presence(procedure: AtomicProcedure, exists: object) -> bool:
    """Validate the ``SCRIPT EXISTS`` reply of a batch and return its flag.

    The flag is informational: a script reloaded by another client between
    ``SCRIPT EXISTS`` and the ``EVALSHA`` calls still runs, so only the
    per-call ``NOSCRIPT`` replies decide what is resent.
    """
    if isinstance(exists, RedisError):
        raise TransportError(f"SCRIPT EXISTS failed: {exists}") from exists
    if not isinstance(exists, list) or len(exists) != 1:
        raise ProtocolViolation(
            f"SCRIPT EXISTS for {procedure.name} returned {exists!r}"
        )
    return bool(exists[0])


def _raise_if_error(reply: object) -> object:
    if isinstance(reply, RedisError):
        raise TransportError(str(reply)) from reply
    return reply
