from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from skillmesh.core.errors import (
    ConflictError,
    MigrationCutoverTimeoutError,
    MigrationNotFoundError,
    MigrationStateError,
    MigrationVerificationError,
    TenantUnavailableError,
)
from skillmesh.domain.models import AuditEvent
from skillmesh.domain.tenancy import INTENT_READ, INTENT_WRITE, SchemaDescriptor, TenantHint, utc_now
from skillmesh.persistence.db import SessionLocal
from skillmesh.services.runtime import build_runtime
from skillmesh.services.telemetry import counters_snapshot, gauges_snapshot
from skillmesh.tests.utils.tenancy import FakeCopier, settings_with, shared_upsert, verification

_ACME_HINT = TenantHint(source="header", value="acme", lookup="id")


async def _runtime(copier: FakeCopier, **overrides):
    runtime = build_runtime(settings_with(**overrides), copier=copier)
    await runtime.registry.upsert(shared_upsert("acme"))
    return runtime


async def _event_types() -> list[str]:
    async with SessionLocal() as session:
        result = await session.execute(select(AuditEvent.event_type).order_by(AuditEvent.id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_successful_migration_walks_every_state() -> None:
    copier = FakeCopier()
    runtime = await _runtime(copier)
    try:
        job = await runtime.coordinator.start("acme", "schema", requested_by="op-1")
        assert job.status == "pending"
        assert job.target_descriptor == {"kind": "schema", "schema_name": "tenant_acme"}

        done = await runtime.coordinator.run(job.id)
        assert done.status == "complete"
        assert done.state_history == ["pending", "copying", "verifying", "cutover", "complete"]
        assert done.report["copied"] == {"skills": 3}
        assert done.report["verification"]["ok"] is True
        assert done.report["final_verification"]["ok"] is True
        assert done.reclaim_after is not None

        record = await runtime.registry.get("acme")
        assert record.isolation_tier == "schema"
        assert record.connection == SchemaDescriptor(schema_name="tenant_acme")
        assert record.previous_connection is not None and record.previous_connection.kind == "shared"
        assert record.status == "active"
        assert record.write_freeze_until is None

        target = await runtime.router.resolve_hint(_ACME_HINT, intent=INTENT_WRITE)
        assert target.schema_name == "tenant_acme"

        assert [call[0] for call in copier.calls] == ["copy", "verify", "copy_delta", "verify"]
        assert gauges_snapshot()["write_frozen_state.acme"] == 0.0
        assert counters_snapshot()["migration_jobs_total.complete"] == 1
        assert await _event_types() == ["migration.started", "migration.completed"]
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_verification_failure_never_reaches_cutover() -> None:
    copier = FakeCopier(verifications=[verification(False)])
    runtime = await _runtime(copier)
    try:
        job = await runtime.coordinator.start("acme", "schema")
        with pytest.raises(MigrationVerificationError):
            await runtime.coordinator.run(job.id)

        failed = await runtime.coordinator.get(job.id)
        assert failed.status == "failed"
        assert failed.error_code == "MIGRATION_VERIFICATION_FAILED"
        assert failed.state_history == ["pending", "copying", "verifying", "failed"]
        assert failed.report["verification"]["ok"] is False
        assert "copy_delta" not in [call[0] for call in copier.calls]

        record = await runtime.registry.get("acme")
        assert record.isolation_tier == "shared"
        assert record.status == "active"
        assert record.active_migration_id is None
        assert record.pending_connection is None
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_copy_failure_marks_job_failed_and_releases_tenant() -> None:
    runtime = await _runtime(FakeCopier(copy_error=ValueError("disk full")))
    try:
        job = await runtime.coordinator.start("acme", "schema")
        with pytest.raises(ValueError):
            await runtime.coordinator.run(job.id)
        failed = await runtime.coordinator.get(job.id)
        assert failed.state_history == ["pending", "copying", "failed"]
        assert failed.error_code == "MIGRATION_FAILED"
        assert failed.error_message == "disk full"
        assert (await runtime.registry.get("acme")).active_migration_id is None
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_cancelled_run_fails_the_job_and_releases_tenant() -> None:
    copy_started = asyncio.Event()

    async def stall() -> None:
        copy_started.set()
        await asyncio.sleep(3600)

    runtime = await _runtime(FakeCopier(on_copy=stall))
    try:
        job = await runtime.coordinator.start("acme", "schema")
        task = asyncio.create_task(runtime.coordinator.run(job.id))
        await asyncio.wait_for(copy_started.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        failed = await runtime.coordinator.get(job.id)
        assert failed.status == "failed"
        assert failed.error_code == "MIGRATION_CANCELLED"
        assert failed.state_history == ["pending", "copying", "failed"]

        record = await runtime.registry.get("acme")
        assert record.status == "active"
        assert record.active_migration_id is None
        assert record.pending_connection is None

        retry = await runtime.coordinator.start("acme", "schema")
        assert retry.id != job.id
        assert retry.status == "pending"
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_failed_final_verification_rolls_back_cutover() -> None:
    copier = FakeCopier(verifications=[verification(True), verification(False)])
    runtime = await _runtime(copier)
    try:
        job = await runtime.coordinator.start("acme", "schema")
        with pytest.raises(MigrationVerificationError):
            await runtime.coordinator.run(job.id)

        failed = await runtime.coordinator.get(job.id)
        assert failed.state_history == ["pending", "copying", "verifying", "cutover", "failed"]
        record = await runtime.registry.get("acme")
        assert record.isolation_tier == "shared"
        assert record.write_freeze_until is None
        assert record.active_migration_id is None
        # Writes flow to the source again.
        target = await runtime.router.resolve_hint(_ACME_HINT, intent=INTENT_WRITE)
        assert target.tier == "shared"
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_cutover_exceeding_the_freeze_window_rolls_back() -> None:
    async def slow_delta() -> None:
        await asyncio.sleep(1.0)

    runtime = await _runtime(FakeCopier(on_delta=slow_delta), migration_write_freeze_max_s=0.2)
    try:
        job = await runtime.coordinator.start("acme", "schema")
        with pytest.raises(MigrationCutoverTimeoutError):
            await runtime.coordinator.run(job.id)
        failed = await runtime.coordinator.get(job.id)
        assert failed.status == "failed"
        assert failed.error_code == "MIGRATION_CUTOVER_TIMEOUT"
        record = await runtime.registry.get("acme")
        assert record.isolation_tier == "shared"
        assert record.write_freeze_until is None
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_writes_are_frozen_during_cutover_while_reads_continue() -> None:
    observed: dict[str, object] = {}
    runtime_ref: dict[str, object] = {}

    async def write_during_cutover() -> None:
        router = runtime_ref["runtime"].router
        observed["read"] = (await router.resolve_hint(_ACME_HINT, intent=INTENT_READ)).tier
        try:
            await router.resolve_hint(_ACME_HINT, intent=INTENT_WRITE)
        except TenantUnavailableError as exc:
            observed["write_retry_after"] = exc.retry_after_s

    runtime = await _runtime(FakeCopier(on_delta=write_during_cutover), migration_cutover_retry_after_s=5)
    runtime_ref["runtime"] = runtime
    try:
        # Warm the routing cache before the freeze; the freeze must still win.
        await runtime.router.resolve_hint(_ACME_HINT, intent=INTENT_WRITE)
        job = await runtime.coordinator.start("acme", "schema")
        await runtime.coordinator.run(job.id)
        assert observed == {"read": "shared", "write_retry_after": 5}
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_second_migration_for_a_tenant_is_rejected() -> None:
    runtime = await _runtime(FakeCopier())
    try:
        first = await runtime.coordinator.start("acme", "schema")
        with pytest.raises(ConflictError):
            await runtime.coordinator.start("acme", "schema:tenant_other")
        jobs = await runtime.coordinator.list_jobs(tenant_id="acme")
        assert [job.id for job in jobs] == [first.id]
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_cancel_before_cutover_keeps_tenant_on_source() -> None:
    runtime = await _runtime(FakeCopier())
    try:
        job = await runtime.coordinator.start("acme", "schema")
        cancelled = await runtime.coordinator.fail(job.id, "operator changed plans", actor_id="op-1")
        assert cancelled.status == "failed"
        assert cancelled.error_code == "MIGRATION_CANCELLED"
        assert (await runtime.registry.get("acme")).status == "active"

        # Terminal jobs are returned untouched and cannot be cancelled again.
        assert (await runtime.coordinator.run(job.id)).status == "failed"
        with pytest.raises(MigrationStateError):
            await runtime.coordinator.fail(job.id, "again")
        assert "migration.cancelled" in await _event_types()
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_unknown_job_is_not_found() -> None:
    runtime = await _runtime(FakeCopier())
    try:
        with pytest.raises(MigrationNotFoundError):
            await runtime.coordinator.get("missing")
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_reclaim_purges_source_after_grace_period() -> None:
    copier = FakeCopier()
    runtime = await _runtime(copier, migration_source_grace_period_s=3600)
    try:
        job = await runtime.coordinator.start("acme", "schema")
        await runtime.coordinator.run(job.id)

        assert await runtime.coordinator.reclaim_expired_sources() == []
        later = utc_now() + timedelta(hours=2)
        assert await runtime.coordinator.reclaim_expired_sources(now=later) == [job.id]
        assert copier.calls[-1] == ("purge", "shared", "acme")

        archived = await runtime.coordinator.get(job.id)
        assert archived.archived_at is not None
        assert archived.report["reclaimed"]["skipped_reason"] is None
        assert (await runtime.registry.get("acme")).previous_connection is None
        # Archived jobs are never reclaimed twice.
        assert await runtime.coordinator.reclaim_expired_sources(now=later) == []
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_reclaim_skips_a_source_the_tenant_moved_back_to() -> None:
    copier = FakeCopier()
    runtime = await _runtime(copier, migration_source_grace_period_s=0)
    try:
        first = await runtime.coordinator.start("acme", "schema")
        await runtime.coordinator.run(first.id)
        back = await runtime.coordinator.start("acme", "shared")
        await runtime.coordinator.run(back.id)

        reclaimed = await runtime.coordinator.reclaim_expired_sources(now=utc_now() + timedelta(seconds=5))
        assert set(reclaimed) == {first.id, back.id}
        purges = [call for call in copier.calls if call[0] == "purge"]
        # Only the schema copy is purged; the shared source is live again.
        assert purges == [("purge", "schema", None)]
        skipped = await runtime.coordinator.get(first.id)
        assert skipped.report["reclaimed"]["skipped_reason"] == "source_in_use_by_tenant"
    finally:
        await runtime.close()
