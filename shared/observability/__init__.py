from .setup import setup_observability, configure_logging, configure_tracing
from .metrics import (
    orders_transitions_total,
    orders_idempotency_requests_total,
    orders_version_conflicts_total,
    orders_outbox_published_total,
    orders_outbox_publish_failures_total,
    orders_relay_pass_duration_seconds,
    orders_outbox_backlog
)
