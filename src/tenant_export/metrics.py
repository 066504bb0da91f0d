"""
Prometheus metrics for export runs.

Focused on essential metrics:
- Pages fetched and fetch retries per API audience
- Nodes visited and events emitted per kind
- Batch delivery outcomes
- Normalization errors and fallback events
"""

import logging
import socket

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)


# =============================================================================
# Fetch
# =============================================================================

pages_fetched_counter = Counter(
    "tenant_export_pages_fetched_total",
    "Total listing pages fetched",
    labelnames=["audience"],
)

fetch_retries_counter = Counter(
    "tenant_export_fetch_retries_total",
    "Total page requests retried, by reason (throttled, server, auth)",
    labelnames=["audience", "reason"],
)

fetch_failures_counter = Counter(
    "tenant_export_fetch_failures_total",
    "Total listings that failed after exhausting retries",
    labelnames=["audience", "error_type"],
)

# =============================================================================
# Traversal
# =============================================================================

nodes_visited_counter = Counter(
    "tenant_export_nodes_visited_total",
    "Total hierarchy nodes discovered",
    labelnames=["kind"],
)

subscriptions_completed_counter = Counter(
    "tenant_export_subscriptions_total",
    "Subscriptions walked, by terminal state",
    labelnames=["state"],
)

# =============================================================================
# Normalization
# =============================================================================

normalization_errors_counter = Counter(
    "tenant_export_normalization_errors_total",
    "Nodes that could not be normalized into an event",
    labelnames=["kind"],
)

fallback_events_counter = Counter(
    "tenant_export_fallback_events_total",
    "Events emitted with the raw-record fallback payload",
    labelnames=["kind"],
)

# =============================================================================
# Delivery
# =============================================================================

events_emitted_counter = Counter(
    "tenant_export_events_emitted_total",
    "Events delivered to the sink in acknowledged batches",
)

batches_sent_counter = Counter(
    "tenant_export_batches_sent_total",
    "Batches acknowledged by the sink",
)

batches_failed_counter = Counter(
    "tenant_export_batches_failed_total",
    "Batches dropped after exhausting send retries",
)

batch_size_bytes = Histogram(
    "tenant_export_batch_size_bytes",
    "Serialized size of batches handed to the sink",
    buckets=[1_000, 10_000, 100_000, 250_000, 500_000, 750_000, 1_000_000],
)

# =============================================================================
# Run
# =============================================================================

run_duration_seconds = Gauge(
    "tenant_export_last_run_duration_seconds",
    "Wall-clock duration of the most recent run",
)


def start_metrics_server(preferred_port: int) -> int:
    """Start Prometheus metrics server with automatic port fallback.
    Returns actual port number that the server is listening on."""
    try:
        start_http_server(preferred_port, registry=REGISTRY)
        return preferred_port
    except OSError as e:
        if e.errno != 98:
            raise

        logger.info(
            "Port already in use, finding available port",
            extra={"preferred_port": preferred_port},
        )
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("", 0))
            s.listen(1)
            available_port = s.getsockname()[1]

        start_http_server(available_port, registry=REGISTRY)
        return available_port


__all__ = [
    "pages_fetched_counter",
    "fetch_retries_counter",
    "fetch_failures_counter",
    "nodes_visited_counter",
    "subscriptions_completed_counter",
    "normalization_errors_counter",
    "fallback_events_counter",
    "events_emitted_counter",
    "batches_sent_counter",
    "batches_failed_counter",
    "batch_size_bytes",
    "run_duration_seconds",
    "start_metrics_server",
]
