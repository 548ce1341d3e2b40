from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from shared.config.database import Database
from shared.observability import (
    orders_idempotency_requests_total,
    orders_transitions_total,
    orders_version_conflicts_total,
)

from .concurrency import ConcurrencyGuard
from .errors import IdempotencyConflict, IdempotencyStoreUnavailable, NotFound, VersionConflict
from .idempotency import IdempotencyCoordinator, StoredResponse
from .models import EventType, Order
from .outbox import OutboxJournal
from .pagination import PaginationCodec
from .repository import OrderRepository

logger = structlog.get_logger(__name__)

CREATED = 201


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Page:
    items: list[Order]
    next_cursor: str | None = None


@dataclass
class CreateResult:
    body: dict
    status_code: int
    replayed: bool = False


@dataclass
class _Claim:
    stored: StoredResponse | None = None
    token: str | None = None
    protected: bool = True


class OrderService:
    """Order lifecycle operations, each one atomic against the primary store.

    Every mutation runs as a single unit of work: the order row and the
    outbox event describing the change commit together or roll back together.
    The event sink is never called from here; the relay owns delivery.
    """

    def __init__(
        self,
        database: Database,
        idempotency: IdempotencyCoordinator,
        cursor_codec: PaginationCodec,
        *,
        lock_timeout_ms: int = 5000,
        idempotency_fail_open: bool = False,
        journal: OutboxJournal | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._database = database
        self._idempotency = idempotency
        self._cursor_codec = cursor_codec
        self._lock_timeout_ms = lock_timeout_ms
        self._fail_open = idempotency_fail_open
        self._journal = journal or OutboxJournal()
        self._guard = ConcurrencyGuard()
        self._clock = clock

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[AsyncSession]:
        async with self._database.session() as session:
            async with session.begin():
                yield session

    # --- create ---

    async def create_draft(self, tenant_id: str) -> Order:
        now = self._clock()
        async with self._unit_of_work() as session:
            order = Order.create(tenant_id, now)
            repo = OrderRepository(session, tenant_id)
            repo.add(order)
            await repo.save(order)
            self._journal.append_event(
                session,
                order_id=order.id,
                tenant_id=tenant_id,
                event_type=EventType.CREATED,
                payload=order.snapshot(),
                now=now,
            )
        orders_transitions_total.labels(transition="create").inc()
        logger.info("order_created", order_id=order.id, tenant_id=tenant_id)
        return order

    async def _acquire(self, tenant_id: str, key: str) -> _Claim:
        try:
            stored = await self._idempotency.lookup(tenant_id, key)
            if stored is not None:
                return _Claim(stored=stored)
            token = await self._idempotency.claim(tenant_id, key)
            if token is not None:
                return _Claim(token=token)
            # Lost the claim: either the winner finished meanwhile or is still running
            stored = await self._idempotency.lookup(tenant_id, key)
            if stored is not None:
                return _Claim(stored=stored)
        except IdempotencyStoreUnavailable as exc:
            orders_idempotency_requests_total.labels(outcome="unavailable").inc()
            if not self._fail_open:
                logger.error("idempotency_store_unavailable", tenant_id=tenant_id, error=exc.details)
                raise
            logger.error(
                "idempotency_store_unavailable_proceeding_unprotected",
                tenant_id=tenant_id,
                error=exc.details,
            )
            return _Claim(protected=False)
        orders_idempotency_requests_total.labels(outcome="conflict").inc()
        raise IdempotencyConflict(key)

    async def create_draft_idempotent(self, tenant_id: str, idempotency_key: str) -> CreateResult:
        """Create a draft once per (tenant, key).

        Replays return the stored creation response verbatim and run no side
        effects. The record is written only after the order has committed; a
        failed create releases the claim so the client can retry.
        """
        claim = await self._acquire(tenant_id, idempotency_key)
        if claim.stored is not None:
            orders_idempotency_requests_total.labels(outcome="hit").inc()
            logger.info("idempotent_replay", tenant_id=tenant_id)
            return CreateResult(claim.stored.response, claim.stored.status_code, replayed=True)
        if claim.protected:
            orders_idempotency_requests_total.labels(outcome="miss").inc()

        try:
            order = await self.create_draft(tenant_id)
        except Exception:
            if claim.token is not None:
                await self._idempotency.release(tenant_id, idempotency_key, claim.token)
            raise

        body = order.snapshot()
        if claim.protected:
            try:
                await self._idempotency.store(tenant_id, idempotency_key, body, CREATED)
            except IdempotencyStoreUnavailable as exc:
                # The order is committed; failing the request now would only invite a duplicate
                logger.error(
                    "idempotency_record_not_stored",
                    tenant_id=tenant_id,
                    order_id=order.id,
                    error=exc.details,
                )
        return CreateResult(body, CREATED)

    # --- transitions ---

    async def _conflict_after_race(self, order_id: str, tenant_id: str, expected_version: int) -> VersionConflict:
        current = await self.get(order_id, tenant_id)
        return VersionConflict(expected_version, current.version, current.snapshot())

    async def confirm(self, order_id: str, tenant_id: str, expected_version: int, total_cents: int) -> Order:
        try:
            async with self._unit_of_work() as session:
                repo = OrderRepository(session, tenant_id)
                order = await repo.get_for_update(order_id, self._lock_timeout_ms)
                if order is None:
                    raise NotFound(order_id)
                self._guard.check(order, expected_version)
                # Read the clock under the row lock so event times follow commit order
                order.confirm(total_cents, self._clock())
                await repo.save(order)
                self._journal.append_event(
                    session,
                    order_id=order.id,
                    tenant_id=tenant_id,
                    event_type=EventType.CONFIRMED,
                    payload=order.snapshot(),
                    now=order.updated_at,
                )
        except VersionConflict as exc:
            orders_version_conflicts_total.inc()
            logger.info("order_version_conflict", order_id=order_id, **exc.details)
            raise
        except StaleDataError:
            orders_version_conflicts_total.inc()
            raise await self._conflict_after_race(order_id, tenant_id, expected_version) from None

        orders_transitions_total.labels(transition="confirm").inc()
        logger.info("order_confirmed", order_id=order.id, tenant_id=tenant_id, version=order.version)
        return order

    async def close(self, order_id: str, tenant_id: str) -> Order:
        read_version = None
        try:
            async with self._unit_of_work() as session:
                repo = OrderRepository(session, tenant_id)
                order = await repo.get_for_update(order_id, self._lock_timeout_ms)
                if order is None:
                    raise NotFound(order_id)
                read_version = order.version
                order.close(self._clock())
                await repo.save(order)
                self._journal.append_event(
                    session,
                    order_id=order.id,
                    tenant_id=tenant_id,
                    event_type=EventType.CLOSED,
                    payload=order.snapshot(),
                    now=order.updated_at,
                )
        except StaleDataError:
            orders_version_conflicts_total.inc()
            raise await self._conflict_after_race(order_id, tenant_id, read_version) from None

        orders_transitions_total.labels(transition="close").inc()
        logger.info("order_closed", order_id=order.id, tenant_id=tenant_id, version=order.version)
        return order

    # --- reads ---

    async def get(self, order_id: str, tenant_id: str) -> Order:
        async with self._database.session() as session:
            order = await OrderRepository(session, tenant_id).get(order_id)
        if order is None:
            raise NotFound(order_id)
        return order

    async def list_orders(self, tenant_id: str, limit: int, cursor: str | None = None) -> Page:
        """Keyset page ordered by (created_at desc, id desc)."""
        before = self._cursor_codec.decode(cursor) if cursor else None
        async with self._database.session() as session:
            rows = await OrderRepository(session, tenant_id).page(limit + 1, before)

        if len(rows) <= limit:
            return Page(items=rows)
        extra = rows[limit]
        return Page(items=rows[:limit], next_cursor=self._cursor_codec.encode(extra.created_at, extra.id))
