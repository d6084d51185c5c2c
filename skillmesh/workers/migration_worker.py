from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from skillmesh.core.config import get_settings
from skillmesh.core.logging import configure_logging
from skillmesh.services.migrations.queue import MigrationJobPayload, process_migration_job
from skillmesh.services.runtime import build_runtime


logger = logging.getLogger(__name__)


async def run_tenant_migration(ctx, payload: dict) -> str:
    # Validate payloads in the worker to enforce the handoff contract.
    job_payload = MigrationJobPayload.model_validate(payload)
    return await process_migration_job(job_payload, coordinator=ctx["runtime"].coordinator)


async def reclaim_expired_sources(ctx) -> int:
    reclaimed = await ctx["runtime"].coordinator.reclaim_expired_sources()
    disposed = await ctx["runtime"].pools.dispose_idle()
    logger.info("reclaim_cycle_finished reclaimed=%s pools_disposed=%s", len(reclaimed), len(disposed))
    return len(reclaimed)


async def _startup(ctx) -> None:
    configure_logging()
    # The worker publishes invalidations but never serves routes, so it does not listen.
    runtime = build_runtime()
    await runtime.start(listen=False)
    ctx["runtime"] = runtime


async def _shutdown(ctx) -> None:
    runtime = ctx.get("runtime")
    if runtime is not None:
        await runtime.close()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.migration_queue_name
    max_tries = max(1, int(settings.migration_max_tries))
    functions = [run_tenant_migration]
    cron_jobs = [cron(reclaim_expired_sources, minute=0, run_at_startup=False)]
    on_startup = _startup
    on_shutdown = _shutdown
