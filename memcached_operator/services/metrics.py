"""
Prometheus metrics for the reconcile loop.

Provides observability into queue depth, pass outcomes and cleanup.
"""
from prometheus_client import Counter, Histogram, Gauge

# Reconcile metrics
reconcile_total = Counter(
    "memcached_operator_reconcile_total",
    "Total number of reconcile passes",
    ["result"],
)

reconcile_duration_seconds = Histogram(
    "memcached_operator_reconcile_duration_seconds",
    "Time spent in one reconcile pass",
    ["result"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)

phase_transition_total = Counter(
    "memcached_operator_phase_transition_total",
    "Total number of status phase transitions",
    ["from_phase", "to_phase"],
)

# Queue metrics
queue_depth = Gauge(
    "memcached_operator_queue_depth",
    "Number of identities waiting in the work queue",
)

queue_processing = Gauge(
    "memcached_operator_queue_processing",
    "Number of identities currently being reconciled",
)

queue_requeue_total = Counter(
    "memcached_operator_queue_requeue_total",
    "Total number of requeues",
    ["reason"],
)

# Termination metrics
cleanup_incomplete_total = Counter(
    "memcached_operator_cleanup_incomplete_total",
    "Total number of termination sweeps that left objects behind",
    ["partition"],
)

watch_events_total = Counter(
    "memcached_operator_watch_events_total",
    "Total number of watch events received",
    ["kind", "type"],
)
