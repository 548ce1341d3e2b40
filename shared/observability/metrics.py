from prometheus_client import Counter, Histogram, Gauge

# Business Metrics
orders_transitions_total = Counter(
    "orders_transitions_total",
    "Order state transitions committed",
    ["transition"]  # Labels: 'create', 'confirm', 'close'
)

orders_idempotency_requests_total = Counter(
    "orders_idempotency_requests_total",
    "Idempotent create requests by cache outcome",
    ["outcome"]  # Labels: 'hit', 'miss', 'conflict', 'unavailable'
)

orders_version_conflicts_total = Counter(
    "orders_version_conflicts_total",
    "Mutations rejected by the optimistic version check"
)

orders_outbox_published_total = Counter(
    "orders_outbox_published_total",
    "Outbox events delivered to the event sink",
    ["event_type"]
)

orders_outbox_publish_failures_total = Counter(
    "orders_outbox_publish_failures_total",
    "Failed event sink deliveries (will be retried)",
    ["event_type"]
)

orders_relay_pass_duration_seconds = Histogram(
    "orders_relay_pass_duration_seconds",
    "Duration of one outbox relay pass in seconds"
)

orders_outbox_backlog = Gauge(
    "orders_outbox_backlog",
    "Unpublished outbox rows seen at the end of the last relay pass"
)
