"""
Prometheus metrics: order transitions and conflicts (engine, via event subscriber),
notification outcomes and live sessions (notifier), location pushes.
"""
from prometheus_client import Counter, Gauge, generate_latest

orders_created_total = Counter(
    "orders_created_total",
    "Total orders created",
    ["category"],
)
order_transitions_total = Counter(
    "order_transitions_total",
    "Total applied order state transitions",
    ["from_state", "to_state"],
)
order_conflicts_total = Counter(
    "order_conflicts_total",
    "Total operations rejected because the order's current state did not allow them",
    ["operation"],
)
order_ratings_total = Counter(
    "order_ratings_total",
    "Total ratings recorded on completed orders",
    ["rater_role"],
)

# Notifier: result is queued | offline | dropped
notifications_total = Counter(
    "notifications_total",
    "Total events offered to live sessions",
    ["kind", "result"],
)
connected_sessions = Gauge(
    "connected_sessions",
    "Live sessions currently registered",
    ["role"],
)

location_updates_total = Counter(
    "location_updates_total",
    "Total courier location pushes accepted",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
