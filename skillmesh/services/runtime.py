from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillmesh.core.config import Settings, get_settings
from skillmesh.services.migrations.coordinator import MigrationCoordinator
from skillmesh.services.migrations.copier import TenantDataCopier
from skillmesh.services.pools import ConnectionPoolManager
from skillmesh.services.registry import TenantRegistry
from skillmesh.services.resilience import close_redis
from skillmesh.services.routing.cache import RoutingCache
from skillmesh.services.routing.invalidation import InvalidationBroadcaster
from skillmesh.services.routing.router import TenantRouter


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    # Process-wide collaborators shared by the API and the migration worker.
    settings: Settings
    cache: RoutingCache
    broadcaster: InvalidationBroadcaster | None
    registry: TenantRegistry
    pools: ConnectionPoolManager
    router: TenantRouter
    coordinator: MigrationCoordinator

    async def start(self, *, listen: bool = True) -> None:
        if listen and self.broadcaster is not None:
            await self.broadcaster.start()

    async def close(self) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.stop()
        await self.pools.close()
        await close_redis()
        logger.info("runtime_closed")


def build_runtime(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession] | None = None,
    copier: TenantDataCopier | None = None,
    pools: ConnectionPoolManager | None = None,
) -> Runtime:
    settings = settings or get_settings()
    cache = RoutingCache(ttl_s=settings.routing_cache_ttl_s, max_entries=settings.routing_cache_max_entries)
    broadcaster = InvalidationBroadcaster(cache) if settings.routing_invalidation_enabled else None
    registry = TenantRegistry(session_factory, cache=cache, broadcaster=broadcaster, settings=settings)
    pools = pools or ConnectionPoolManager(settings=settings)
    router = TenantRouter(registry, cache=cache, settings=settings)
    coordinator = MigrationCoordinator(
        registry,
        pools,
        copier=copier,
        session_factory=session_factory,
        settings=settings,
    )
    return Runtime(
        settings=settings,
        cache=cache,
        broadcaster=broadcaster,
        registry=registry,
        pools=pools,
        router=router,
        coordinator=coordinator,
    )
