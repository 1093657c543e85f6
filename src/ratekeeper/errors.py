"""Exceptions raised by the limiter."""

from __future__ import annotations


class LimiterError(Exception):
    """Base class for every error raised by ``ratekeeper``."""


class TransportError(LimiterError):
    """A call to Redis failed (connection, timeout, or an error reply).

    The outcome of the admission check is unknown: the script may or may
    not have run.
    """


class TooManyRetries(LimiterError):
    """Scripts kept disappearing from Redis after repeated reloads."""


class ProtocolViolation(LimiterError):
    """Redis answered with a reply of an unexpected shape."""


class InvalidArgument(LimiterError, ValueError):
    """A limit or request count is malformed; nothing was sent to Redis."""
