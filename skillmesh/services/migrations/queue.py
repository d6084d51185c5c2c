from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel

from skillmesh.core.config import get_settings
from skillmesh.services.migrations.coordinator import MigrationCoordinator


logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_redis_pool_loop: asyncio.AbstractEventLoop | None = None
_redis_lock: asyncio.Lock | None = None


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class MigrationJobPayload(BaseModel):
    # Published job schema for API-to-worker handoff.
    job_id: str
    tenant_id: str
    request_id: str | None = None


def is_inline_mode() -> bool:
    return get_settings().migration_execution_mode.lower() == "inline"


async def get_redis_pool() -> ArqRedis:
    # Cache the arq pool per event loop to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop, _redis_lock
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop is current_loop:
        return _redis_pool
    if _redis_pool_loop is not current_loop:
        _redis_pool = None
        _redis_lock = asyncio.Lock()
        _redis_pool_loop = current_loop
    assert _redis_lock is not None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.migration_queue_name,
            )
    return _redis_pool


async def get_queue_depth() -> int | None:
    # None signals Redis unavailability to ops endpoints.
    if is_inline_mode():
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(get_settings().migration_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


async def process_migration_job(payload: MigrationJobPayload, *, coordinator: MigrationCoordinator) -> str:
    """Run one migration job and return its final status.

    Failures are already recorded on the job by the coordinator, so they are
    logged here rather than re-raised into the queue.
    """
    try:
        view = await coordinator.run(payload.job_id)
    except Exception:  # noqa: BLE001 - the job row carries the failure
        logger.exception("migration_job_failed job_id=%s tenant_id=%s", payload.job_id, payload.tenant_id)
        view = await coordinator.get(payload.job_id)
    return view.status


async def enqueue_migration_job(
    payload: MigrationJobPayload,
    *,
    coordinator: MigrationCoordinator,
) -> str:
    if is_inline_mode():
        await process_migration_job(payload, coordinator=coordinator)
        return payload.job_id

    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "run_tenant_migration",
        payload.model_dump(),
        _job_id=payload.job_id,
        _queue_name=settings.migration_queue_name,
    )
    # arq returns None when the job id is already queued; keep tracing with the same id.
    return job.job_id if job else payload.job_id
