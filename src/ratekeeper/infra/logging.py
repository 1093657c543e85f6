"""Log output for services that embed the limiter.

The library itself only logs through ``logging.getLogger(__name__)`` and
never touches handlers on import.  A service opts in to the shared format
in one of two ways::

    # explicitly, at startup
    setup_logging(get_app_config().logging)

    # or through the factory, with RATEKEEPER_LOGGING__CONFIGURE_ROOT=true
    async with build_limiter() as limiter:
        ...

Records are written to stdout as JSON lines or as short text lines, and
carry the ``trace_id``/``span_id`` of the active OpenTelemetry span so a
decision logged inside ``batch.execute`` links back to its trace.
"""

from __future__ import annotations

import logging
import sys

from opentelemetry import trace
from pythonjsonlogger.json import JsonFormatter

from ratekeeper.configs.system import LoggingConfig

# Loggers that are chatty at INFO and drown out admission decisions.
_QUIET_LOGGERS = ("redis", "opentelemetry")

_TEXT_FORMAT = "%(levelname)-8s %(asctime)s %(name)s  %(message)s"
_TEXT_DATEFMT = "%H:%M:%S"


class _TraceContextFilter(logging.Filter):
    """Stamps each record with the current trace and span ids ("" if none)."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = trace.get_current_span().get_span_context()
        valid = ctx is not None and ctx.is_valid
        record.trace_id = format(ctx.trace_id, "032x") if valid else ""  # type: ignore[attr-defined]
        record.span_id = format(ctx.span_id, "016x") if valid else ""  # type: ignore[attr-defined]
        return True


def _formatter(json_output: bool) -> logging.Formatter:
    if not json_output:
        return logging.Formatter(fmt=_TEXT_FORMAT, datefmt=_TEXT_DATEFMT)
    return JsonFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s %(trace_id)s %(span_id)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        defaults={"trace_id": "", "span_id": ""},
    )


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Replace the root handlers with one stdout handler built from ``config``."""
    config = config or LoggingConfig()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_TraceContextFilter())
    handler.setFormatter(_formatter(config.json_output))

    root = logging.getLogger()
    root.setLevel(config.level.upper())
    root.handlers = [handler]

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
