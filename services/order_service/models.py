import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from shared.config.database import Base

from .errors import InvalidStateTransition, InvalidTotal


class OrderStatus(str, enum.Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    CLOSED = "closed"


class EventType(str, enum.Enum):
    CREATED = "orders.created"
    CONFIRMED = "orders.confirmed"
    CLOSED = "orders.closed"


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; everything is stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (Index("ix_orders_tenant_created_id", "tenant_id", "created_at", "id"),)

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(128), nullable=False)
    status = Column(String(16), nullable=False, default=OrderStatus.DRAFT.value)
    version = Column(Integer, nullable=False, default=1)
    total_cents = Column(Integer, nullable=True)  # set once, by confirm
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    # UPDATE ... WHERE version = <version read>; the transitions bump it themselves
    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    # --- state machine ---
    # Transitions only touch this record's fields. Persisting the row and the
    # matching outbox event is the caller's job, in one transaction.

    @classmethod
    def create(cls, tenant_id: str, now: datetime) -> "Order":
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            status=OrderStatus.DRAFT.value,
            version=1,
            total_cents=None,
            created_at=now,
            updated_at=now,
        )

    def confirm(self, total_cents: int, now: datetime) -> None:
        self._require(OrderStatus.DRAFT, OrderStatus.CONFIRMED)
        if total_cents < 0:
            raise InvalidTotal(total_cents)
        self.total_cents = total_cents
        self._advance(OrderStatus.CONFIRMED, now)

    def close(self, now: datetime) -> None:
        self._require(OrderStatus.CONFIRMED, OrderStatus.CLOSED)
        self._advance(OrderStatus.CLOSED, now)

    def _require(self, source: OrderStatus, target: OrderStatus) -> None:
        if self.status != source.value:
            raise InvalidStateTransition(self.status, target.value)

    def _advance(self, target: OrderStatus, now: datetime) -> None:
        self.status = target.value
        self.version += 1
        self.updated_at = now

    def snapshot(self) -> dict:
        """JSON-safe copy of the current state, used for events and responses."""
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "status": self.status,
            "version": self.version,
            "totalCents": self.total_cents,
            "createdAt": as_utc(self.created_at).isoformat(),
            "updatedAt": as_utc(self.updated_at).isoformat(),
        }


class OutboxEvent(Base):
    __tablename__ = "outbox"
    __table_args__ = (Index("ix_outbox_unpublished", "published_at", "created_at"),)

    id = Column(String(36), primary_key=True)  # doubles as the event id consumers dedupe on
    event_type = Column(String(64), nullable=False)
    order_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(128), nullable=False)
    payload = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    # Delivery bookkeeping, only ever touched by the relay while unpublished
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    available_at = Column(DateTime(timezone=True), nullable=True)

    # Trace of the request that produced the event, when one was being recorded
    trace_id = Column(String(32), nullable=True)
