import structlog
from fastapi import Header, HTTPException, status


def _bad_request(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": code, "message": message},
    )


async def require_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    """Dependency returning the caller's tenant. Authentication happens upstream."""
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise _bad_request("MISSING_TENANT", "X-Tenant-Id header is required")
    # Every log line for the rest of the request carries the tenant
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id)
    return tenant_id


async def require_idempotency_key(idempotency_key: str | None = Header(default=None)) -> str:
    key = (idempotency_key or "").strip()
    if not key:
        raise _bad_request("MISSING_IDEMPOTENCY_KEY", "Idempotency-Key header is required")
    if len(key) > 255:
        raise _bad_request("INVALID_IDEMPOTENCY_KEY", "Idempotency-Key must be at most 255 characters")
    return key


async def require_if_match(if_match: str | None = Header(default=None)) -> int:
    """Parse the expected order version from If-Match (`"3"`, `3` or `W/"3"`)."""
    if not if_match:
        raise _bad_request("INVALID_IF_MATCH", "If-Match header is required")
    raw = if_match.strip()
    if raw.startswith("W/"):
        raw = raw[2:]
    raw = raw.strip('"')
    if not raw.isdigit():
        raise _bad_request("INVALID_IF_MATCH", "If-Match must carry the order version")
    return int(raw)
