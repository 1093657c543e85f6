"""Limit definitions and admission results."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import timedelta

from .errors import InvalidArgument

# ``retry_after`` value meaning "nothing to wait for".
NO_RETRY = timedelta(seconds=-1)

DEFAULT_REQUEST_MAX_DURATION = timedelta(seconds=60)

_PERIOD_UNITS = {
    timedelta(seconds=1): "s",
    timedelta(minutes=1): "m",
    timedelta(hours=1): "h",
}


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Limit:
    """Rate limit: ``rate`` units per ``period``, up to ``burst`` at once.

    ``burst`` defaults to ``rate`` (rounded down, at least 1).
    """

    rate: float
    period: timedelta
    burst: int | None = None

    def __post_init__(self) -> None:
        if not self.rate > 0:
            raise InvalidArgument(f"rate must be positive, got {self.rate!r}")
        if self.period <= timedelta(0):
            raise InvalidArgument(f"period must be positive, got {self.period!r}")
        if self.burst is None:
            object.__setattr__(self, "burst", max(1, math.floor(self.rate)))
        elif self.burst < 1:
            raise InvalidArgument(f"burst must be at least 1, got {self.burst!r}")

    @property
    def interval(self) -> float:
        """Seconds of capacity consumed by a single unit."""
        return self.period.total_seconds() / self.rate

    def __str__(self) -> str:
        unit = _PERIOD_UNITS.get(self.period, str(self.period))
        rate = int(self.rate) if float(self.rate).is_integer() else self.rate
        return f"{rate} req/{unit} (burst {self.burst})"


def per_second(rate: float) -> Limit:
    return Limit(rate=rate, period=timedelta(seconds=1))


def per_minute(rate: float) -> Limit:
    return Limit(rate=rate, period=timedelta(minutes=1))


def per_hour(rate: float) -> Limit:
    return Limit(rate=rate, period=timedelta(hours=1))


@dataclass(frozen=True)
class ConcurrencyLimit:
    """At most ``max`` request ids may hold a slot on a key at once.

    A slot whose holder never releases it lapses after
    ``request_max_duration`` (60s when left at zero).
    """

    max: int
    request_max_duration: timedelta = field(default=timedelta(0))

    def __post_init__(self) -> None:
        if self.max < 0:
            raise InvalidArgument(f"max must not be negative, got {self.max!r}")
        if self.request_max_duration < timedelta(0):
            raise InvalidArgument(
                "request_max_duration must not be negative, "
                f"got {self.request_max_duration!r}"
            )
        if self.request_max_duration == timedelta(0):
            object.__setattr__(
                self, "request_max_duration", DEFAULT_REQUEST_MAX_DURATION
            )

    @property
    def request_max_duration_ms(self) -> int:
        return max(1, math.ceil(self.request_max_duration.total_seconds() * 1000))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Result:
    """Outcome of a rate-limit check.

    Attributes:
        limit: The limit the check ran against.
        allowed: Units admitted by this call.
        remaining: Units that could be admitted right now after this call.
        retry_after: Wait before the rejected units would fit, or
            ``NO_RETRY`` when nothing was rejected.
        reset_after: Time until the bucket is completely drained.
    """

    limit: Limit
    allowed: int
    remaining: int
    retry_after: timedelta
    reset_after: timedelta


@dataclass(frozen=True)
class ConcurrencyResult:
    """Outcome of a concurrency slot request.

    ``retry_after`` on denial is an estimate, not the time the next slot
    actually frees up: holders release whenever they finish.
    """

    key: str
    limit: ConcurrencyLimit
    allowed: bool
    used: int
    remaining: int
    retry_after: timedelta
