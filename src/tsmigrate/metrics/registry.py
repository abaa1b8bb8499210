"""
Prometheus metrics for the migration pipeline.

Everything registers on the global REGISTRY; the CLI exposes it with
start_http_server when a metrics port is configured.
"""

from prometheus_client import Counter, Gauge, Histogram

RECORDS_ENQUEUED_TOTAL = Counter(
    "tsm_records_enqueued_total",
    "Records pushed into the shared queue by fetch workers",
)

BACKPRESSURE_WAITS_TOTAL = Counter(
    "tsm_backpressure_waits_total",
    "Enqueue attempts that timed out because the shared queue was full",
)

RECORDS_WRITTEN_TOTAL = Counter(
    "tsm_records_written_total",
    "Records written to the destination store",
)

WRITE_BATCHES_TOTAL = Counter(
    "tsm_write_batches_total",
    "Destination batch writes by outcome",
    ["outcome"],
)

WRITE_LATENCY_SECONDS = Histogram(
    "tsm_write_latency_seconds",
    "Destination batch write latency (including retries)",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

FAILED_REQUESTS_TOTAL = Counter(
    "tsm_failed_requests_total",
    "Source requests recorded in the failed-request log",
    ["kind"],
)

QUEUE_DEPTH = Gauge(
    "tsm_queue_depth",
    "Items currently held in the shared queue",
)

DESTINATION_AVAILABLE = Gauge(
    "tsm_destination_available",
    "1 when the last destination health check succeeded",
)

EMERGENCY_SHUTDOWNS_TOTAL = Counter(
    "tsm_emergency_shutdowns_total",
    "Pipeline emergency shutdowns",
)


class MetricsRegistry:
    """Centralized metrics registry for pipeline components."""

    records_enqueued_total = RECORDS_ENQUEUED_TOTAL
    backpressure_waits_total = BACKPRESSURE_WAITS_TOTAL
    records_written_total = RECORDS_WRITTEN_TOTAL
    write_batches_total = WRITE_BATCHES_TOTAL
    write_latency_seconds = WRITE_LATENCY_SECONDS
    failed_requests_total = FAILED_REQUESTS_TOTAL
    queue_depth = QUEUE_DEPTH
    destination_available = DESTINATION_AVAILABLE
    emergency_shutdowns_total = EMERGENCY_SHUTDOWNS_TOTAL


# Singleton instance
metrics_registry = MetricsRegistry()
