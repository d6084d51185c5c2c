from __future__ import annotations

import asyncio

import pytest

from skillmesh.core.errors import MigrationVerificationError, TenantUnavailableError
from skillmesh.domain.tenancy import RequestContext, SchemaDescriptor
from skillmesh.services.runtime import build_runtime
from skillmesh.tests.utils.tenancy import (
    FakeCopier,
    seed_skills,
    settings_with,
    shared_upsert,
    skills_table,
    sqlite_url,
    verification,
)

_ACME = RequestContext(headers={"X-Tenant-Id": "acme"})


@pytest.mark.asyncio
async def test_shared_tenant_resolves_to_the_annotated_shared_target() -> None:
    runtime = build_runtime(settings_with(), copier=FakeCopier())
    try:
        record = await runtime.registry.upsert(shared_upsert("acme"))
        resolved = await runtime.registry.resolve("acme")
        target = await runtime.router.resolve_connection(_ACME)
        assert resolved == record
        assert target.tier == record.isolation_tier == "shared"
        assert target.pool_key == "shared"
        assert target.row_filter_tenant_id == "acme"
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_migrating_tenant_still_routes_to_its_source() -> None:
    runtime = build_runtime(settings_with(), copier=FakeCopier())
    try:
        await runtime.registry.upsert(shared_upsert("acme"))
        await runtime.registry.mark_migrating("acme", "schema:tenant_acme", job_id="job-1")
        record = await runtime.registry.get("acme")
        assert record.status == "migrating"
        assert record.pending_connection == SchemaDescriptor(schema_name="tenant_acme")

        target = await runtime.router.resolve_connection(_ACME)
        assert target.tier == "shared"
        assert target.schema_name is None
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_failed_verification_leaves_routing_on_the_source() -> None:
    runtime = build_runtime(settings_with(), copier=FakeCopier(verifications=[verification(False)]))
    try:
        await runtime.registry.upsert(shared_upsert("acme"))
        job = await runtime.coordinator.start("acme", "schema:tenant_acme")
        with pytest.raises(MigrationVerificationError):
            await runtime.coordinator.run(job.id)
        assert (await runtime.coordinator.get(job.id)).status == "failed"

        target = await runtime.router.resolve_connection(_ACME)
        assert target.tier == "shared"
        assert target.row_filter_tenant_id == "acme"
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_interleaved_shared_tenants_only_see_their_own_rows(tmp_path) -> None:
    shared_dsn = sqlite_url(tmp_path / "shared.db")
    await seed_skills(
        shared_dsn,
        [
            {"id": f"{tenant}-{index}", "tenant_id": tenant, "name": "python", "level": index}
            for tenant in ("acme", "globex")
            for index in range(5)
        ],
    )
    runtime = build_runtime(settings_with(shared_database_url=shared_dsn, tenant_pool_size=2))
    try:
        await runtime.registry.upsert(shared_upsert("acme"))
        await runtime.registry.upsert(shared_upsert("globex"))

        async def read_rows(tenant_id: str) -> set[str]:
            ctx = RequestContext(headers={"X-Tenant-Id": tenant_id})
            seen: set[str] = set()
            for _ in range(5):
                target = await runtime.router.resolve_connection(ctx)
                async with runtime.pools.acquire(target) as conn:
                    await asyncio.sleep(0)
                    rows = await conn.select(skills_table)
                seen.update(row.tenant_id for row in rows)
                assert len(rows) == 5
            return seen

        results = await asyncio.gather(*(read_rows(tenant) for tenant in ("acme", "globex", "acme", "globex")))
        assert results == [{"acme"}, {"globex"}, {"acme"}, {"globex"}]
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_registry_mutations_reach_the_routers_cache() -> None:
    runtime = build_runtime(settings_with(), copier=FakeCopier())
    try:
        assert runtime.router.cache is runtime.cache
        await runtime.registry.upsert(shared_upsert("acme"))
        assert (await runtime.router.resolve_connection(_ACME)).tier == "shared"

        job = await runtime.coordinator.start("acme", "schema:tenant_acme")
        await runtime.coordinator.run(job.id)
        target = await runtime.router.resolve_connection(_ACME)
        assert target.tier == "schema"
        assert target.schema_name == "tenant_acme"

        await runtime.registry.set_status("acme", "suspended")
        with pytest.raises(TenantUnavailableError):
            await runtime.router.resolve_connection(_ACME)
    finally:
        await runtime.close()
