from __future__ import annotations

import asyncio
import json

import pytest

from skillmesh.core.config import get_settings
from skillmesh.services.registry import TenantRegistry
from skillmesh.services.routing.cache import RoutingCache, RoutingEntry
from skillmesh.services.routing.invalidation import InvalidationBroadcaster
from skillmesh.services.telemetry import counters_snapshot
from skillmesh.tests.utils.tenancy import make_record, settings_with, shared_target, shared_upsert


class StubRedis:
    def __init__(self, *, fail: bool = False, stall: bool = False) -> None:
        self.published: list[tuple[str, str]] = []
        self._fail = fail
        self._stall = stall

    async def publish(self, channel: str, payload: str) -> int:
        if self._fail:
            raise ConnectionError("redis down")
        if self._stall:
            await asyncio.sleep(3600)
        self.published.append((channel, payload))
        return 1


async def _warm(cache: RoutingCache, tenant_id: str) -> None:
    async def loader() -> RoutingEntry:
        return RoutingEntry(
            record=make_record(tenant_id),
            target=shared_target(tenant_id, "sqlite+aiosqlite:///x.db"),
        )

    await cache.get_or_load(f"id:{tenant_id}", loader)


def _broadcaster(cache: RoutingCache, redis: StubRedis | None) -> InvalidationBroadcaster:
    async def factory() -> StubRedis | None:
        return redis

    return InvalidationBroadcaster(cache, redis_factory=factory, channel="routing", instance_id="api-1")


@pytest.mark.asyncio
async def test_publish_tags_messages_with_origin() -> None:
    redis = StubRedis()
    await _broadcaster(RoutingCache(ttl_s=60), redis).publish("acme")
    assert len(redis.published) == 1
    channel, payload = redis.published[0]
    assert channel == "routing"
    assert json.loads(payload) == {"tenant_id": "acme", "origin": "api-1"}
    assert counters_snapshot()["routing_invalidations_published_total"] == 1


@pytest.mark.asyncio
async def test_publish_tolerates_missing_or_failing_redis() -> None:
    await _broadcaster(RoutingCache(ttl_s=60), None).publish("acme")
    await _broadcaster(RoutingCache(ttl_s=60), StubRedis(fail=True)).publish("acme")
    assert "routing_invalidations_published_total" not in counters_snapshot()


@pytest.mark.asyncio
async def test_remote_message_invalidates_only_that_tenant() -> None:
    cache = RoutingCache(ttl_s=60)
    await _warm(cache, "acme")
    await _warm(cache, "globex")
    broadcaster = _broadcaster(cache, StubRedis())

    assert broadcaster.handle_message(json.dumps({"tenant_id": "acme", "origin": "api-2"}).encode("utf-8"))
    assert cache.get("id:acme") is None
    assert cache.get("id:globex") is not None
    assert counters_snapshot()["routing_invalidations_received_total"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data",
    [
        "not json",
        json.dumps(["acme"]),
        json.dumps({"origin": "api-2"}),
        json.dumps({"tenant_id": "", "origin": "api-2"}),
        json.dumps({"tenant_id": "acme", "origin": "api-1"}),
    ],
)
async def test_malformed_or_own_messages_are_ignored(data: str) -> None:
    cache = RoutingCache(ttl_s=60)
    await _warm(cache, "acme")
    assert _broadcaster(cache, StubRedis()).handle_message(data) is False
    assert cache.get("id:acme") is not None


@pytest.mark.asyncio
async def test_stalled_publish_is_bounded_and_does_not_hold_the_tenant_lock(monkeypatch) -> None:
    monkeypatch.setenv("ROUTING_INVALIDATION_PUBLISH_TIMEOUT_MS", "50")
    get_settings.cache_clear()
    cache = RoutingCache(ttl_s=60)
    broadcaster = _broadcaster(cache, StubRedis(stall=True))

    await asyncio.wait_for(broadcaster.publish("acme"), timeout=5)
    assert "routing_invalidations_published_total" not in counters_snapshot()

    registry = TenantRegistry(cache=cache, broadcaster=broadcaster, settings=settings_with())
    await asyncio.wait_for(registry.upsert(shared_upsert("acme")), timeout=5)
    renamed = await asyncio.wait_for(registry.upsert(shared_upsert("acme", name="Acme Renamed")), timeout=5)
    assert renamed.name == "Acme Renamed"
