"""Rate-limit checks: script arguments in, typed ``Result`` out."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

from .errors import InvalidArgument, ProtocolViolation
from .models import NO_RETRY, Limit, Result


@dataclass(frozen=True)
class RateCheck:
    """One queued rate-limit check.

    ``partial`` selects "admit as many as fit" (``allow_at_most``) over
    all-or-nothing (``allow_n``).
    """

    key: str
    limit: Limit
    n: int
    partial: bool = False

    def __post_init__(self) -> None:
        if self.n < 0:
            raise InvalidArgument(f"n must not be negative, got {self.n!r}")

    def script_args(self) -> list[object]:
        return [
            self.limit.burst,
            self.limit.rate,
            self.limit.period.total_seconds(),
            self.n,
            "1" if self.partial else "0",
        ]

    def outcome(self, result: Result) -> str:
        """Label for the decision, as recorded in metrics."""
        if self.n == 0:
            return "peek"
        if result.allowed == self.n:
            return "allowed"
        if result.allowed > 0:
            return "partial"
        return "denied"


def _duration(raw: object) -> timedelta:
    seconds = float(raw)  # type: ignore[arg-type]
    if seconds == -1:
        return NO_RETRY
    return timedelta(seconds=seconds)


def parse_rate_reply(limit: Limit, reply: object) -> Result:
    """Convert the ``rate_take`` script reply into a ``Result``."""
    if not isinstance(reply, Sequence) or len(reply) != 4:
        raise ProtocolViolation(f"unexpected rate_take reply: {reply!r}")
    allowed, remaining, retry_after, reset_after = reply
    return Result(
        limit=limit,
        allowed=int(allowed),
        remaining=int(remaining),
        retry_after=_duration(retry_after),
        reset_after=_duration(reset_after),
    )
