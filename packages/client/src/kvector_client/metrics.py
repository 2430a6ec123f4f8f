"""Prometheus metrics for kvector clients.

1. Request Metrics (Rate, Errors, Duration)
   - Request counts by command and status
   - Request duration histograms

2. Pool Metrics
   - Time spent waiting in acquire
   - Exhausted acquisitions
   - Connections provisioned and discarded

Exposed on whatever registry the host application serves; nothing is started
here.
"""

from prometheus_client import Counter, Histogram

# ==============================================================================
# Request Metrics
# ==============================================================================

REQUEST_DURATION = Histogram(
    "kvector_request_duration_seconds",
    "Round-trip time of one command in seconds",
    ["command", "status"],
    buckets=[0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

REQUEST_COUNT = Counter(
    "kvector_requests_total",
    "Total commands sent",
    ["command", "status"],
)

# ==============================================================================
# Pool Metrics
# ==============================================================================

POOL_ACQUIRE_WAIT = Histogram(
    "kvector_pool_acquire_wait_seconds",
    "Time from acquire() call to a connection being handed out",
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0],
)

POOL_EXHAUSTED = Counter(
    "kvector_pool_exhausted_total",
    "Acquisitions that timed out with PoolExhaustedError",
)

POOL_CONNECTIONS_CREATED = Counter(
    "kvector_pool_connections_created_total",
    "Connections opened and authenticated by pools",
)

POOL_CONNECTIONS_DISCARDED = Counter(
    "kvector_pool_connections_discarded_total",
    "Connections closed by pools",
    ["reason"],
)
