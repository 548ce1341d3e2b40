"""Idempotency records kept in redis.

Records live outside the primary store's transaction: a record is written
only after the order it describes has been committed. To close the
check-then-act race between concurrent requests carrying the same key, the
first request takes an atomic ``SET NX`` claim on the key before doing any
work; losers either replay the completed record or are told to retry.

Keys expire after a configurable TTL. After expiry a reused key is treated as
a new request; that window is accepted and documented in the settings.
"""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .errors import IdempotencyStoreUnavailable

logger = structlog.get_logger(__name__)

PENDING = "pending"
COMPLETED = "completed"


@dataclass(frozen=True)
class StoredResponse:
    response: dict[str, Any]
    status_code: int
    created_at: datetime


def _cache_key(tenant_id: str, key: str) -> str:
    return f"idempotency:{tenant_id}:{key}"


def _dumps(value: dict) -> str:
    return json.dumps(value, separators=(",", ":"))


def _loads(raw: str) -> dict[str, Any] | None:
    try:
        record = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return record if isinstance(record, dict) else None


class IdempotencyCoordinator:
    def __init__(self, redis: Redis, ttl_seconds: int, claim_ttl_seconds: int = 60):
        self._redis = redis
        self._ttl_seconds = ttl_seconds
        self._claim_ttl_seconds = claim_ttl_seconds

    async def lookup(self, tenant_id: str, key: str) -> StoredResponse | None:
        """Completed record for the key, if any. Pending claims read as a miss.

        A record that cannot be decoded is reported as a store outage rather
        than a miss, so a create never runs over it.
        """
        try:
            raw = await self._redis.get(_cache_key(tenant_id, key))
        except RedisError as exc:
            raise IdempotencyStoreUnavailable(str(exc)) from exc
        if raw is None:
            return None

        record = _loads(raw)
        if record is not None and record.get("state") == PENDING:
            return None
        try:
            return StoredResponse(
                response=record["response"],
                status_code=record["status_code"],
                created_at=datetime.fromisoformat(record["created_at"]),
            )
        except (TypeError, KeyError, ValueError):
            # Replaying or overwriting an unreadable record could hand out a second order
            logger.error("idempotency_record_unreadable", tenant_id=tenant_id)
            raise IdempotencyStoreUnavailable("unreadable idempotency record") from None

    async def claim(self, tenant_id: str, key: str) -> str | None:
        """Atomically reserve the key. Returns a claim token, or None if taken."""
        token = str(uuid.uuid4())
        marker = _dumps({"state": PENDING, "token": token})
        try:
            acquired = await self._redis.set(
                _cache_key(tenant_id, key), marker, nx=True, ex=self._claim_ttl_seconds
            )
        except RedisError as exc:
            raise IdempotencyStoreUnavailable(str(exc)) from exc
        return token if acquired else None

    async def store(
        self,
        tenant_id: str,
        key: str,
        response: dict[str, Any],
        status_code: int,
        ttl_seconds: int | None = None,
    ) -> None:
        record = {
            "state": COMPLETED,
            "response": response,
            "status_code": status_code,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._redis.set(
                _cache_key(tenant_id, key), _dumps(record), ex=ttl_seconds or self._ttl_seconds
            )
        except RedisError as exc:
            raise IdempotencyStoreUnavailable(str(exc)) from exc

    async def release(self, tenant_id: str, key: str, token: str) -> None:
        """Drop our own pending claim so the client can retry after a failure."""
        cache_key = _cache_key(tenant_id, key)
        try:
            raw = await self._redis.get(cache_key)
            if raw is None:
                return
            record = _loads(raw) or {}
            if record.get("state") == PENDING and record.get("token") == token:
                await self._redis.delete(cache_key)
        except RedisError as exc:
            # The claim still expires on its own after claim_ttl_seconds
            logger.warning("idempotency_release_failed", tenant_id=tenant_id, error=str(exc))
