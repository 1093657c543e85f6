"""Prometheus metrics for admission decisions.

All metrics use the ``ratekeeper_`` prefix and register on the default
``prometheus_client`` registry, so an application's existing ``/metrics``
endpoint picks them up.
"""

from prometheus_client import Counter, Histogram

DECISIONS_TOTAL = Counter(
    "ratekeeper_decisions_total",
    "Admission decisions resolved, by limiter kind and outcome",
    ["kind", "outcome"],  # kind: rate | concurrency; outcome: allowed | partial | denied | peek | error
)

SCRIPT_RELOADS_TOTAL = Counter(
    "ratekeeper_script_reloads_total",
    "Times a batch found its Lua script missing and triggered a reload",
    ["procedure"],
)

ROUND_TRIP_SECONDS = Histogram(
    "ratekeeper_round_trip_seconds",
    "Latency of one pipelined round trip to Redis",
    ["procedure"],
    buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1),
)
