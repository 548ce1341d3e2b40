import copy
import uuid
from datetime import datetime

from opentelemetry import trace
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import EventType, OutboxEvent, as_utc

SCHEMA_VERSION = "1"


def current_trace_id() -> str | None:
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return None
    return trace.format_trace_id(ctx.trace_id)


class OutboxJournal:
    """Append-only event journal written in the caller's transaction.

    ``append_event`` never flushes or commits: the order mutation and its event
    reach the database together when the surrounding unit of work commits, or
    not at all.
    """

    @staticmethod
    def append_event(
        session: AsyncSession,
        *,
        order_id: str,
        tenant_id: str,
        event_type: EventType,
        payload: dict,
        now: datetime,
    ) -> OutboxEvent:
        event = OutboxEvent(
            id=str(uuid.uuid4()),
            event_type=event_type.value,
            order_id=order_id,
            tenant_id=tenant_id,
            # point-in-time copy; later order changes must not leak into it
            payload=copy.deepcopy(payload),
            published_at=None,
            created_at=now,
            attempts=0,
            trace_id=current_trace_id(),
        )
        session.add(event)
        return event

    @staticmethod
    async def pending_count(session: AsyncSession) -> int:
        result = await session.execute(
            select(func.count()).select_from(OutboxEvent).where(OutboxEvent.published_at.is_(None))
        )
        return result.scalar_one()


def build_envelope(event: OutboxEvent, source: str) -> dict:
    """Wire envelope handed to the event sink. ``id`` is the dedupe key."""
    envelope = {
        "id": event.id,
        "type": event.event_type,
        "source": source,
        "tenantId": event.tenant_id,
        "time": as_utc(event.created_at).isoformat(),
        "schemaVersion": SCHEMA_VERSION,
        "data": event.payload,
    }
    if event.trace_id:
        envelope["traceId"] = event.trace_id
    return envelope
