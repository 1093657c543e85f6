"""Concurrency slot checks: script arguments in, ``ConcurrencyResult`` out."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

from .errors import ProtocolViolation
from .models import NO_RETRY, ConcurrencyLimit, ConcurrencyResult

# Upper bound on the retry hint given to a refused ``take``.
_DENIED_RETRY_AFTER = timedelta(seconds=1)


@dataclass(frozen=True)
class ConcurrencyCheck:
    """One queued ``take`` of a slot on ``key`` for ``request_id``."""

    key: str
    request_id: str
    limit: ConcurrencyLimit

    def script_args(self) -> list[object]:
        return [
            self.request_id,
            self.limit.max,
            self.limit.request_max_duration_ms,
        ]


def denied_retry_after(limit: ConcurrencyLimit) -> timedelta:
    """Retry hint for a refused ``take``.

    Slots free up when a holder releases or its entry expires, neither of
    which is predictable here, so this is a fixed estimate capped by the
    slot lifetime.
    """
    return min(_DENIED_RETRY_AFTER, limit.request_max_duration)


def parse_take_reply(
    key: str, limit: ConcurrencyLimit, reply: object
) -> ConcurrencyResult:
    """Convert the ``concurrency_take`` script reply into a result."""
    if not isinstance(reply, Sequence) or len(reply) != 2:
        raise ProtocolViolation(f"unexpected concurrency_take reply: {reply!r}")
    allowed = int(reply[0]) == 1
    used = int(reply[1])
    return ConcurrencyResult(
        key=key,
        limit=limit,
        allowed=allowed,
        used=used,
        remaining=max(0, limit.max - used),
        retry_after=NO_RETRY if allowed else denied_retry_after(limit),
    )
