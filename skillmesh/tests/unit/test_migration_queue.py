from __future__ import annotations

import pytest

from skillmesh.services.migrations.queue import (
    MigrationJobPayload,
    enqueue_migration_job,
    get_queue_depth,
    process_migration_job,
)
from skillmesh.services.runtime import build_runtime
from skillmesh.tests.utils.tenancy import FakeCopier, settings_with, shared_upsert, verification


@pytest.mark.asyncio
async def test_inline_enqueue_runs_the_job() -> None:
    runtime = build_runtime(settings_with(), copier=FakeCopier())
    try:
        await runtime.registry.upsert(shared_upsert("acme"))
        job = await runtime.coordinator.start("acme", "schema")
        job_id = await enqueue_migration_job(
            MigrationJobPayload(job_id=job.id, tenant_id="acme"),
            coordinator=runtime.coordinator,
        )
        assert job_id == job.id
        assert (await runtime.coordinator.get(job.id)).status == "complete"
        assert await get_queue_depth() == 0
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_worker_records_failures_instead_of_raising() -> None:
    runtime = build_runtime(settings_with(), copier=FakeCopier(verifications=[verification(False)]))
    try:
        await runtime.registry.upsert(shared_upsert("acme"))
        job = await runtime.coordinator.start("acme", "schema")
        status = await process_migration_job(
            MigrationJobPayload(job_id=job.id, tenant_id="acme"),
            coordinator=runtime.coordinator,
        )
        assert status == "failed"
        assert (await runtime.registry.get("acme")).isolation_tier == "shared"
    finally:
        await runtime.close()
