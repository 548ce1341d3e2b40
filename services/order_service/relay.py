"""Outbox relay: the only path from committed outbox rows to the event sink.

Each pass claims a bounded batch of unpublished rows (oldest first) with
``FOR UPDATE SKIP LOCKED`` so several relay workers can run side by side,
publishes them, and latches ``published_at`` on success. A failed delivery
stays unpublished with a backoff deadline. Only the oldest unpublished row of
each order is eligible, which keeps per-order publish order equal to
``created_at`` order even across retries and workers.

Delivery is at-least-once: a crash between the sink's ack and the commit
republishes the row on the next pass. Rows are never deleted.

Run standalone with ``python -m services.order_service.relay``.
"""

import asyncio
import signal
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog
from prometheus_client import start_http_server
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from shared.config.database import Database
from shared.config.settings import OrderServiceSettings, get_settings
from shared.observability import (
    configure_logging,
    configure_tracing,
    orders_outbox_backlog,
    orders_outbox_publish_failures_total,
    orders_outbox_published_total,
    orders_relay_pass_duration_seconds,
)

from .models import OutboxEvent
from .outbox import OutboxJournal, build_envelope
from .publisher import EventSink, create_event_sink

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RelayResult:
    claimed: int = 0
    published: int = 0
    failed: int = 0


class OutboxRelay:
    def __init__(
        self,
        database: Database,
        sink: EventSink,
        *,
        source: str = "orders-service",
        batch_size: int = 100,
        poll_interval: float = 1.0,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._database = database
        self._sink = sink
        self._source = source
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._clock = clock
        self._stopping = asyncio.Event()

    @classmethod
    def from_settings(cls, database: Database, sink: EventSink, settings: OrderServiceSettings) -> "OutboxRelay":
        return cls(
            database,
            sink,
            source=settings.event_source,
            batch_size=settings.relay_batch_size,
            poll_interval=settings.relay_poll_interval_seconds,
            backoff_base=settings.relay_backoff_base_seconds,
            backoff_max=settings.relay_backoff_max_seconds,
        )

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after the batch in flight has been committed."""
        self._stopping.set()

    def backoff(self, attempts: int) -> timedelta:
        delay = min(self._backoff_base * (2 ** max(attempts - 1, 0)), self._backoff_max)
        return timedelta(seconds=delay)

    async def _claim_batch(self, session: AsyncSession, now: datetime) -> list[OutboxEvent]:
        earlier = aliased(OutboxEvent)
        has_older_pending = (
            select(earlier.id)
            .where(
                earlier.order_id == OutboxEvent.order_id,
                earlier.published_at.is_(None),
                or_(
                    earlier.created_at < OutboxEvent.created_at,
                    and_(earlier.created_at == OutboxEvent.created_at, earlier.id < OutboxEvent.id),
                ),
            )
            .exists()
        )
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.published_at.is_(None),
                or_(OutboxEvent.available_at.is_(None), OutboxEvent.available_at <= now),
                ~has_older_pending,
            )
            .order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
            .limit(self._batch_size)
            .with_for_update(skip_locked=True, of=OutboxEvent)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def run_once(self) -> RelayResult:
        """One relay pass in a single transaction.

        Cancelling the pass rolls the transaction back, so nothing is marked
        published unless the whole batch commits.
        """
        result = RelayResult()
        started = time.perf_counter()
        async with self._database.session() as session:
            async with session.begin():
                rows = await self._claim_batch(session, self._clock())
                result.claimed = len(rows)
                for row in rows:
                    envelope = build_envelope(row, self._source)
                    try:
                        await self._sink.publish(envelope)
                    except Exception as exc:
                        row.attempts += 1
                        row.last_error = str(exc)[:1000]
                        row.available_at = self._clock() + self.backoff(row.attempts)
                        result.failed += 1
                        orders_outbox_publish_failures_total.labels(event_type=row.event_type).inc()
                        logger.warning(
                            "outbox_publish_failed",
                            event_id=row.id,
                            event_type=row.event_type,
                            order_id=row.order_id,
                            attempts=row.attempts,
                            retry_at=row.available_at.isoformat(),
                            error=str(exc),
                        )
                        continue
                    row.published_at = self._clock()
                    result.published += 1
                    orders_outbox_published_total.labels(event_type=row.event_type).inc()

            backlog = await OutboxJournal.pending_count(session)

        orders_outbox_backlog.set(backlog)
        orders_relay_pass_duration_seconds.observe(time.perf_counter() - started)
        if result.claimed:
            logger.info(
                "outbox_relay_pass",
                claimed=result.claimed,
                published=result.published,
                failed=result.failed,
                backlog=backlog,
            )
        return result

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_forever(self) -> None:
        logger.info("outbox_relay_started", batch_size=self._batch_size, poll_interval=self._poll_interval)
        consecutive_errors = 0
        while not self._stopping.is_set():
            try:
                result = await self.run_once()
            except (SQLAlchemyError, OSError) as exc:
                consecutive_errors += 1
                delay = self.backoff(consecutive_errors).total_seconds()
                logger.error("outbox_relay_pass_failed", error=str(exc), retry_in=delay, exc_info=True)
                await self._pause(delay)
                continue
            consecutive_errors = 0
            # Go straight on while there is work; a full batch or any progress means more may wait
            if result.claimed < self._batch_size and not result.published:
                await self._pause(self._poll_interval)
        logger.info("outbox_relay_stopped")


async def _run(settings: OrderServiceSettings) -> None:
    database = Database(settings.database_url, echo=settings.database_echo)
    sink = create_event_sink(settings)
    relay = OutboxRelay.from_settings(database, sink, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, relay.stop)

    try:
        await database.create_all()
        await relay.run_forever()
    finally:
        await sink.aclose()
        await database.dispose()


def configure_relay_observability(settings: OrderServiceSettings) -> None:
    """Logging, tracing and a /metrics endpoint for the standalone relay process."""
    configure_logging(settings.log_level)
    if settings.telemetry_enabled:
        configure_tracing("orders_outbox_relay", settings.otlp_endpoint)
    if settings.metrics_enabled:
        start_http_server(settings.relay_metrics_port)
        logger.info("relay_metrics_exposed", port=settings.relay_metrics_port)


def main() -> None:
    settings = get_settings()
    configure_relay_observability(settings)
    asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
