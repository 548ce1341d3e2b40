from .dependencies import require_tenant_id, require_idempotency_key, require_if_match

__all__ = [
    "require_tenant_id",
    "require_idempotency_key",
    "require_if_match"
]
