import asyncio
import json

import pytest
from sqlalchemy import func, select

from services.order_service.errors import IdempotencyConflict, IdempotencyStoreUnavailable
from services.order_service.idempotency import IdempotencyCoordinator
from services.order_service.models import Order, OutboxEvent
from services.order_service.service import OrderService


async def _count(database, model) -> int:
    async with database.session() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# --- coordinator ---


async def test_lookup_misses_unknown_key(idempotency):
    assert await idempotency.lookup("tenant-a", "key-1") is None


async def test_store_then_lookup_returns_the_response(idempotency, redis):
    body = {"id": "o-1", "status": "draft"}

    await idempotency.store("tenant-a", "key-1", body, 201)
    stored = await idempotency.lookup("tenant-a", "key-1")

    assert stored.response == body
    assert stored.status_code == 201
    assert redis.ttls["idempotency:tenant-a:key-1"] == 3600


async def test_keys_are_scoped_per_tenant(idempotency):
    await idempotency.store("tenant-a", "key-1", {"id": "o-1"}, 201)

    assert await idempotency.lookup("tenant-b", "key-1") is None


async def test_claim_is_exclusive_and_short_lived(idempotency, redis):
    first = await idempotency.claim("tenant-a", "key-1")
    second = await idempotency.claim("tenant-a", "key-1")

    assert first is not None
    assert second is None
    assert redis.ttls["idempotency:tenant-a:key-1"] == 30
    # a pending claim is not a stored response
    assert await idempotency.lookup("tenant-a", "key-1") is None


async def test_release_only_drops_own_pending_claim(idempotency, redis):
    token = await idempotency.claim("tenant-a", "key-1")

    await idempotency.release("tenant-a", "key-1", "someone-elses-token")
    assert "idempotency:tenant-a:key-1" in redis.data

    await idempotency.release("tenant-a", "key-1", token)
    assert "idempotency:tenant-a:key-1" not in redis.data


async def test_release_never_drops_a_completed_record(idempotency, redis):
    token = await idempotency.claim("tenant-a", "key-1")
    await idempotency.store("tenant-a", "key-1", {"id": "o-1"}, 201)

    await idempotency.release("tenant-a", "key-1", token)

    assert json.loads(redis.data["idempotency:tenant-a:key-1"])["state"] == "completed"


async def test_unreachable_cache_raises_store_unavailable(idempotency, redis):
    redis.available = False

    with pytest.raises(IdempotencyStoreUnavailable):
        await idempotency.lookup("tenant-a", "key-1")
    with pytest.raises(IdempotencyStoreUnavailable):
        await idempotency.claim("tenant-a", "key-1")


# --- idempotent create ---


async def test_same_key_twice_returns_identical_response_and_one_order(service, database):
    first = await service.create_draft_idempotent("tenant-a", "key-1")
    second = await service.create_draft_idempotent("tenant-a", "key-1")

    assert first.status_code == second.status_code == 201
    assert first.body == second.body
    assert json.dumps(first.body) == json.dumps(second.body)
    assert not first.replayed
    assert second.replayed
    assert await _count(database, Order) == 1
    assert await _count(database, OutboxEvent) == 1


async def test_different_keys_create_different_orders(service, database):
    first = await service.create_draft_idempotent("tenant-a", "key-1")
    second = await service.create_draft_idempotent("tenant-a", "key-2")

    assert first.body["id"] != second.body["id"]
    assert await _count(database, Order) == 2


async def test_replay_serves_the_creation_response_even_after_confirm(service):
    created = await service.create_draft_idempotent("tenant-a", "key-1")
    await service.confirm(created.body["id"], "tenant-a", 1, 500)

    replay = await service.create_draft_idempotent("tenant-a", "key-1")

    assert replay.body == created.body
    assert replay.body["status"] == "draft"


async def test_concurrent_requests_with_same_key_create_one_order(service, database):
    results = await asyncio.gather(
        *(service.create_draft_idempotent("tenant-a", "key-1") for _ in range(5)),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, IdempotencyConflict)]
    assert len(successes) + len(conflicts) == 5
    assert len({r.body["id"] for r in successes}) == 1
    assert await _count(database, Order) == 1
    assert await _count(database, OutboxEvent) == 1


async def test_request_while_claim_is_pending_conflicts(service, idempotency, database):
    await idempotency.claim("tenant-a", "key-1")

    with pytest.raises(IdempotencyConflict):
        await service.create_draft_idempotent("tenant-a", "key-1")

    assert await _count(database, Order) == 0


async def test_failed_create_releases_the_claim(database, idempotency, cursor_codec, clock, redis):
    class BrokenJournal:
        def append_event(self, session, **kwargs):
            raise RuntimeError("disk full")

    broken = OrderService(database, idempotency, cursor_codec, journal=BrokenJournal(), clock=clock)

    with pytest.raises(RuntimeError):
        await broken.create_draft_idempotent("tenant-a", "key-1")

    assert redis.data == {}
    assert await _count(database, Order) == 0

    healthy = OrderService(database, idempotency, cursor_codec, clock=clock)
    result = await healthy.create_draft_idempotent("tenant-a", "key-1")
    assert result.status_code == 201
    assert await _count(database, Order) == 1


async def test_cache_outage_fails_closed_by_default(service, redis, database):
    redis.available = False

    with pytest.raises(IdempotencyStoreUnavailable):
        await service.create_draft_idempotent("tenant-a", "key-1")

    assert await _count(database, Order) == 0


async def test_cache_outage_with_fail_open_still_creates(database, redis, cursor_codec, clock):
    redis.available = False
    service = OrderService(
        database,
        IdempotencyCoordinator(redis, ttl_seconds=60),
        cursor_codec,
        idempotency_fail_open=True,
        clock=clock,
    )

    result = await service.create_draft_idempotent("tenant-a", "key-1")

    assert result.status_code == 201
    assert not result.replayed
    assert await _count(database, Order) == 1


async def test_cache_write_failure_after_commit_does_not_fail_request(service, redis, database):
    class FlakyRedis:
        """Reads and claims work, the final write does not."""

        def __init__(self, inner):
            self.inner = inner

        async def get(self, name):
            return await self.inner.get(name)

        async def set(self, name, value, ex=None, nx=False):
            if not nx:
                redis.available = False
            return await self.inner.set(name, value, ex=ex, nx=nx)

        async def delete(self, *names):
            return await self.inner.delete(*names)

    service._idempotency = IdempotencyCoordinator(FlakyRedis(redis), ttl_seconds=60)

    result = await service.create_draft_idempotent("tenant-a", "key-1")

    assert result.status_code == 201
    assert await _count(database, Order) == 1


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '{"state": "completed"}', '"just a string"'])
async def test_unreadable_record_is_treated_as_store_unavailable(idempotency, redis, raw):
    redis.data["idempotency:tenant-a:key-1"] = raw

    with pytest.raises(IdempotencyStoreUnavailable):
        await idempotency.lookup("tenant-a", "key-1")


async def test_release_leaves_an_unreadable_record_alone(idempotency, redis):
    redis.data["idempotency:tenant-a:key-1"] = "{not json"

    await idempotency.release("tenant-a", "key-1", "token")

    assert redis.data["idempotency:tenant-a:key-1"] == "{not json"


async def test_create_over_unreadable_record_fails_closed(service, redis, database):
    redis.data["idempotency:tenant-a:key-1"] = "\x00garbage"

    with pytest.raises(IdempotencyStoreUnavailable):
        await service.create_draft_idempotent("tenant-a", "key-1")

    assert await _count(database, Order) == 0
