import asyncio
import inspect
import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.pool import NullPool

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.order_service.idempotency import IdempotencyCoordinator  # noqa: E402
from services.order_service.pagination import PaginationCodec  # noqa: E402
from services.order_service.service import OrderService  # noqa: E402
from shared.config.database import Database  # noqa: E402
from shared.config.settings import OrderServiceSettings  # noqa: E402

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute async test functions without requiring pytest-asyncio."""

    test_function = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_function):
        funcargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            loop.run_until_complete(test_function(**funcargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class FakeClock:
    """Deterministic clock; stays put until advanced."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class InMemoryRedis:
    """The handful of async redis commands the idempotency coordinator issues."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.available = True
        self.closed = False

    def _check(self) -> None:
        if not self.available:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def get(self, name: str):
        self._check()
        return self.data.get(name)

    async def set(self, name: str, value: str, ex: int | None = None, nx: bool = False):
        self._check()
        if nx and name in self.data:
            return None
        self.data[name] = value
        self.ttls[name] = ex
        return True

    async def delete(self, *names: str) -> int:
        self._check()
        removed = 0
        for name in names:
            if self.data.pop(name, None) is not None:
                self.ttls.pop(name, None)
                removed += 1
        return removed

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def database(tmp_path: pathlib.Path) -> Database:
    # NullPool: no connection outlives the event loop that opened it
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", poolclass=NullPool)
    asyncio.run(db.create_all())
    return db


@pytest.fixture
def cursor_codec() -> PaginationCodec:
    return PaginationCodec("test-cursor-secret")


@pytest.fixture
def idempotency(redis: InMemoryRedis) -> IdempotencyCoordinator:
    return IdempotencyCoordinator(redis, ttl_seconds=3600, claim_ttl_seconds=30)


@pytest.fixture
def service(database, idempotency, cursor_codec, clock) -> OrderService:
    return OrderService(database, idempotency, cursor_codec, lock_timeout_ms=1000, clock=clock)


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> OrderServiceSettings:
    return OrderServiceSettings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        redis_url="redis://localhost:6379/15",
        metrics_enabled=False,
        telemetry_enabled=False,
        cursor_secret="test-cursor-secret",
    )
