"""OpenTelemetry tracer and span vocabulary.

The library only creates spans; exporting them is up to the embedding
application's ``TracerProvider``.  Without one the spans are no-ops.

Usage::

    from ratekeeper.infra.telemetry import SPAN_BATCH_EXECUTE, tracer

    with tracer.start_as_current_span(SPAN_BATCH_EXECUTE) as span:
        ...
"""

from __future__ import annotations

from opentelemetry import trace

tracer = trace.get_tracer("ratekeeper")

# ---------------------------------------------------------------------------
# Span names
# ---------------------------------------------------------------------------

SPAN_BATCH_EXECUTE = "batch.execute"
SPAN_SCRIPTS_RELOAD = "scripts.reload"
SPAN_SLOTS_RELEASE = "slots.release"

# ---------------------------------------------------------------------------
# Span attribute keys
# ---------------------------------------------------------------------------

ATTR_PROCEDURE = "ratekeeper.procedure"
ATTR_BATCH_SIZE = "ratekeeper.batch_size"
ATTR_RETRY_DEPTH = "ratekeeper.retry_depth"
ATTR_KEY_ERRORS = "ratekeeper.key_errors"
