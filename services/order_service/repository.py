from datetime import datetime

from sqlalchemy import and_, or_, select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import LockTimeout
from .models import Order

# PostgreSQL lock_not_available
_LOCK_NOT_AVAILABLE = "55P03"


def _is_lock_timeout(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == _LOCK_NOT_AVAILABLE:
        return True
    # SQLite reports a busy writer this way once its busy timeout elapses
    return "database is locked" in str(orig)


class OrderRepository:
    """Order persistence bound to one tenant.

    The tenant is a constructor argument rather than a per-call parameter, so
    no query issued through the repository can leave the tenant filter out.
    """

    def __init__(self, db: AsyncSession, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    def _scoped(self):
        return select(Order).where(Order.tenant_id == self.tenant_id)

    def add(self, order: Order) -> None:
        if order.tenant_id != self.tenant_id:
            raise ValueError("order does not belong to this repository's tenant")
        self.db.add(order)

    async def get(self, order_id: str) -> Order | None:
        result = await self.db.execute(self._scoped().where(Order.id == order_id))
        return result.scalars().first()

    async def get_for_update(self, order_id: str, lock_timeout_ms: int) -> Order | None:
        """Read the order with a row lock held until the transaction ends.

        The wait for the lock is bounded; running out of it raises
        ``LockTimeout`` which callers may retry.
        """
        try:
            if self.db.bind.dialect.name == "postgresql":
                # SET does not take bind parameters; the value is an int from settings
                await self.db.execute(text(f"SET LOCAL lock_timeout = '{int(lock_timeout_ms)}ms'"))
            result = await self.db.execute(
                self._scoped()
                .where(Order.id == order_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        except DBAPIError as exc:
            if _is_lock_timeout(exc):
                raise LockTimeout(order_id, lock_timeout_ms) from exc
            raise
        return result.scalars().first()

    async def save(self, order: Order) -> None:
        # Emits the version-conditional UPDATE now so a lost race fails early
        self.db.add(order)
        await self.db.flush()

    async def page(self, size: int, before: tuple[datetime, str] | None = None) -> list[Order]:
        """Orders newest first; ``before`` is an inclusive (created_at, id) bound."""
        stmt = self._scoped()
        if before is not None:
            created_at, order_id = before
            stmt = stmt.where(
                or_(
                    Order.created_at < created_at,
                    and_(Order.created_at == created_at, Order.id <= order_id),
                )
            )
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).limit(size)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
