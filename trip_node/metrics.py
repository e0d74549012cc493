"""
Prometheus metrics for the trip node.
Exposed on /metrics by the health server: throughput per outcome, ledger writes,
store failures and unit-of-work latency.
"""
from prometheus_client import Counter, Gauge, Histogram, REGISTRY

SERVICE = "trip-node"

# Counters - Processing
trip_events_total = Counter(
    "trip_node_events_total",
    "Telemetry events handled, by outcome (applied, duplicate, rejected, retrying)",
    ["outcome"],
    registry=REGISTRY,
)
trip_decode_failures_total = Counter(
    "trip_node_decode_failures_total",
    "Messages rejected by the event decoder",
    ["field"],
    registry=REGISTRY,
)
trip_store_failures_total = Counter(
    "trip_node_store_failures_total",
    "Transient durable-store failures (rolled back, retried)",
    ["reason"],
    registry=REGISTRY,
)
trip_dlq_messages_total = Counter(
    "trip_node_dlq_messages_total",
    "Messages sent to the dead letter exchange",
    ["queue", "reason"],
    registry=REGISTRY,
)

# Counters - Ledger
trips_opened_total = Counter(
    "trip_node_trips_opened_total",
    "Trips opened on ignition on",
    registry=REGISTRY,
)
trips_closed_total = Counter(
    "trip_node_trips_closed_total",
    "Trips closed on ignition off",
    registry=REGISTRY,
)
trip_points_total = Counter(
    "trip_node_points_inserted_total",
    "Trip points inserted",
    registry=REGISTRY,
)
trip_alerts_total = Counter(
    "trip_node_alerts_recorded_total",
    "Alerts recorded, by alert type",
    ["alert_type"],
    registry=REGISTRY,
)
trip_idle_activity_total = Counter(
    "trip_node_idle_activity_recorded_total",
    "Idle activity rows recorded",
    registry=REGISTRY,
)

# Gauges
trip_connection_connected = Gauge(
    "trip_node_connection_connected",
    "1 if connected to RabbitMQ, 0 otherwise",
    ["queue"],
    registry=REGISTRY,
)
trip_service_info = Gauge(
    "trip_node_info",
    "Trip node metadata",
    ["service"],
    registry=REGISTRY,
)

# Histograms
trip_unit_of_work_seconds = Histogram(
    "trip_node_unit_of_work_seconds",
    "Time spent applying one event (lock, decide, write, commit)",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

trip_service_info.labels(service=SERVICE).set(1)


def record_outcome(outcome: str) -> None:
    """Count one handled event by outcome."""
    trip_events_total.labels(outcome=outcome).inc()


def record_decode_failure(field: str) -> None:
    """Count a message the decoder rejected, by offending field."""
    trip_decode_failures_total.labels(field=field or "payload").inc()


def record_store_failure(reason: str) -> None:
    """Count a transient store failure."""
    trip_store_failures_total.labels(reason=reason).inc()


def record_dlq_message(queue: str, reason: str) -> None:
    """Record a message sent to DLQ."""
    trip_dlq_messages_total.labels(queue=queue, reason=reason).inc()


def record_ledger_writes(opened: int = 0, closed: int = 0, points: int = 0, alerts=(), idle: int = 0) -> None:
    """Count the ledger rows a committed unit of work actually wrote."""
    if opened:
        trips_opened_total.inc(opened)
    if closed:
        trips_closed_total.inc(closed)
    if points:
        trip_points_total.inc(points)
    if idle:
        trip_idle_activity_total.inc(idle)
    for alert_type in alerts:
        trip_alerts_total.labels(alert_type=alert_type).inc()


def set_connection_connected(queue: str, connected: bool) -> None:
    """Set RabbitMQ connection status (1=connected, 0=disconnected)."""
    trip_connection_connected.labels(queue=queue).set(1 if connected else 0)


def observe_unit_of_work_time(seconds: float) -> None:
    """Record the duration of one unit of work."""
    trip_unit_of_work_seconds.observe(seconds)
