from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from redis.asyncio import Redis

from skillmesh.core.config import get_settings
from skillmesh.services.resilience import get_redis
from skillmesh.services.routing.cache import RoutingCache
from skillmesh.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_RECONNECT_DELAY_S = 1.0


class InvalidationBroadcaster:
    """Fan routing invalidations out to other API instances over Redis pub/sub.

    Local invalidation always happens first and never depends on Redis; a
    Redis outage only widens the cross-instance staleness window to the
    routing TTL.
    """

    def __init__(
        self,
        cache: RoutingCache,
        *,
        redis_factory: Callable[[], Awaitable[Redis | None]] | None = None,
        channel: str | None = None,
        instance_id: str | None = None,
    ) -> None:
        settings = get_settings()
        self._cache = cache
        self._redis_factory = redis_factory or get_redis
        self._channel = channel or settings.routing_invalidation_channel
        self._instance_id = instance_id or uuid4().hex
        self._publish_timeout_s = max(0.001, settings.routing_invalidation_publish_timeout_ms / 1000.0)
        self._task: asyncio.Task[None] | None = None

    @property
    def instance_id(self) -> str:
        return self._instance_id

    async def publish(self, tenant_id: str) -> None:
        redis = await self._redis_factory()
        if redis is None:
            return
        payload = json.dumps({"tenant_id": tenant_id, "origin": self._instance_id})
        try:
            await asyncio.wait_for(redis.publish(self._channel, payload), timeout=self._publish_timeout_s)
            increment_counter("routing_invalidations_published_total")
        except Exception as exc:  # noqa: BLE001 - peers fall back to TTL expiry
            logger.warning("routing_invalidation_publish_failed tenant_id=%s", tenant_id, exc_info=exc)

    def handle_message(self, data: Any) -> bool:
        # Apply a remote invalidation; returns False for malformed or self-originated messages.
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8")
        try:
            payload = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("routing_invalidation_malformed payload=%r", data)
            return False
        if not isinstance(payload, dict):
            return False
        tenant_id = payload.get("tenant_id")
        if not isinstance(tenant_id, str) or not tenant_id:
            return False
        if payload.get("origin") == self._instance_id:
            return False
        self._cache.invalidate(tenant_id)
        increment_counter("routing_invalidations_received_total")
        return True

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._listen(), name="routing-invalidation-listener")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _listen(self) -> None:
        while True:
            redis = await self._redis_factory()
            if redis is None:
                await asyncio.sleep(_RECONNECT_DELAY_S)
                continue
            pubsub = redis.pubsub()
            try:
                await pubsub.subscribe(self._channel)
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    self.handle_message(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - keep listening across Redis restarts
                logger.warning("routing_invalidation_listener_error", exc_info=exc)
                # Entries cached while disconnected may have missed invalidations.
                self._cache.clear()
                await asyncio.sleep(_RECONNECT_DELAY_S)
            finally:
                await pubsub.aclose()
