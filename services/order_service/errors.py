"""Error taxonomy of the orders service.

Every error knows its wire ``code`` and HTTP status so the app-level handler
can render it without a lookup table. ``PublishFailure`` is relay-internal and
never reaches a request.
"""

from typing import Any


class OrderServiceError(Exception):
    code = "ORDER_SERVICE_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(OrderServiceError):
    """Unknown id or an order owned by another tenant (indistinguishable)."""

    code = "ORDER_NOT_FOUND"
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order with ID {order_id} not found", {"orderId": order_id})
        self.order_id = order_id


class VersionConflict(OrderServiceError):
    code = "VERSION_MISMATCH"
    status_code = 409

    def __init__(self, expected: int, actual: int, current: dict[str, Any] | None = None):
        details: dict[str, Any] = {"expectedVersion": expected, "actualVersion": actual}
        if current is not None:
            details["current"] = current
        super().__init__("Order version does not match", details)
        self.expected = expected
        self.actual = actual


class InvalidStateTransition(OrderServiceError):
    code = "INVALID_STATUS_TRANSITION"
    status_code = 409

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Order cannot move from {current} to {target}",
            {"currentStatus": current, "targetStatus": target},
        )
        self.current = current
        self.target = target


class InvalidTotal(OrderServiceError):
    code = "INVALID_TOTAL"
    status_code = 400

    def __init__(self, total_cents: int):
        super().__init__("totalCents must be a non-negative integer", {"totalCents": total_cents})


class InvalidCursor(OrderServiceError):
    code = "INVALID_CURSOR"
    status_code = 400

    def __init__(self, reason: str = "malformed cursor"):
        super().__init__("Invalid cursor provided", {"reason": reason})


class IdempotencyConflict(OrderServiceError):
    """A request with the same key is still being processed."""

    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409

    def __init__(self, key: str):
        super().__init__(
            "A request with this Idempotency-Key is already in progress",
            {"idempotencyKey": key},
        )


class IdempotencyStoreUnavailable(OrderServiceError):
    code = "IDEMPOTENCY_STORE_UNAVAILABLE"
    status_code = 503

    def __init__(self, reason: str):
        super().__init__("Idempotency store is unavailable, retry later", {"reason": reason})


class LockTimeout(OrderServiceError):
    """Row lock not acquired within the configured wait. Safe to retry."""

    code = "LOCK_TIMEOUT"
    status_code = 503

    def __init__(self, order_id: str, timeout_ms: int):
        super().__init__(
            "Order is locked by another operation, retry later",
            {"orderId": order_id, "timeoutMs": timeout_ms},
        )


class PublishFailure(OrderServiceError):
    code = "PUBLISH_FAILURE"
    status_code = 502

    def __init__(self, event_id: str, reason: str):
        super().__init__(f"Publishing event {event_id} failed: {reason}", {"eventId": event_id})
        self.event_id = event_id
        self.reason = reason
