from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillmesh.core.config import Settings, get_settings
from skillmesh.core.errors import (
    ConflictError,
    MigrationCutoverTimeoutError,
    MigrationNotFoundError,
    MigrationStateError,
    MigrationVerificationError,
    SkillmeshError,
)
from skillmesh.domain.models import MigrationJob
from skillmesh.domain.tenancy import (
    INTENT_WRITE,
    TIER_DEDICATED,
    TIER_SCHEMA,
    ConnectionTarget,
    DedicatedDescriptor,
    SchemaDescriptor,
    SharedDescriptor,
    TenantRecord,
    as_utc,
    default_schema_name,
    descriptor_from_value,
    descriptor_to_json,
    placement_key,
    redact_dsn,
    utc_now,
)
from skillmesh.persistence.db import SessionLocal
from skillmesh.persistence.repos import migrations as migrations_repo
from skillmesh.services.audit import record_event
from skillmesh.services.migrations.copier import SqlTenantDataCopier, TenantDataCopier, VerificationReport
from skillmesh.services.pools import ConnectionPoolManager
from skillmesh.services.registry import TenantRegistry
from skillmesh.services.resilience import migration_retry_policy, retry_async
from skillmesh.services.routing.router import build_target_for_descriptor
from skillmesh.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

MIGRATION_STATE_PENDING = "pending"
MIGRATION_STATE_COPYING = "copying"
MIGRATION_STATE_VERIFYING = "verifying"
MIGRATION_STATE_CUTOVER = "cutover"
MIGRATION_STATE_COMPLETE = "complete"
MIGRATION_STATE_FAILED = "failed"
MIGRATION_STATES = (
    MIGRATION_STATE_PENDING,
    MIGRATION_STATE_COPYING,
    MIGRATION_STATE_VERIFYING,
    MIGRATION_STATE_CUTOVER,
    MIGRATION_STATE_COMPLETE,
    MIGRATION_STATE_FAILED,
)
TERMINAL_STATES = frozenset({MIGRATION_STATE_COMPLETE, MIGRATION_STATE_FAILED})

ERROR_CANCELLED = "MIGRATION_CANCELLED"
ERROR_FAILED = "MIGRATION_FAILED"


def _state_transition_allowed(current: str, target: str) -> bool:
    # Verification can never be skipped: cutover is reachable only from verifying.
    allowed: dict[str, set[str]] = {
        MIGRATION_STATE_PENDING: {MIGRATION_STATE_COPYING, MIGRATION_STATE_FAILED},
        MIGRATION_STATE_COPYING: {MIGRATION_STATE_VERIFYING, MIGRATION_STATE_FAILED},
        MIGRATION_STATE_VERIFYING: {MIGRATION_STATE_CUTOVER, MIGRATION_STATE_FAILED},
        MIGRATION_STATE_CUTOVER: {MIGRATION_STATE_COMPLETE, MIGRATION_STATE_FAILED},
    }
    return target in allowed.get(current, set())


def _redacted_descriptor(value: dict[str, Any] | None) -> dict[str, Any] | None:
    if value is None:
        return None
    payload = dict(value)
    if payload.get("dsn"):
        payload["dsn"] = redact_dsn(payload["dsn"])
    return payload


@dataclass(frozen=True)
class MigrationJobView:
    # Return a stable job shape to operator APIs and scripts.
    id: str
    tenant_id: str
    source_tier: str
    target_tier: str
    source_descriptor: dict[str, Any]
    target_descriptor: dict[str, Any]
    status: str
    state_history: list[str]
    report: dict[str, Any]
    error_code: str | None
    error_message: str | None
    requested_by: str | None
    request_id: str | None
    started_at: datetime | None
    completed_at: datetime | None
    reclaim_after: datetime | None
    archived_at: datetime | None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def as_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "source_tier": self.source_tier,
            "target_tier": self.target_tier,
            "source_descriptor": _redacted_descriptor(self.source_descriptor),
            "target_descriptor": _redacted_descriptor(self.target_descriptor),
            "status": self.status,
            "state_history": list(self.state_history),
            "report": self.report,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "requested_by": self.requested_by,
            "request_id": self.request_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "reclaim_after": self.reclaim_after.isoformat() if self.reclaim_after else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }


def _to_view(job: MigrationJob) -> MigrationJobView:
    return MigrationJobView(
        id=job.id,
        tenant_id=job.tenant_id,
        source_tier=job.source_tier,
        target_tier=job.target_tier,
        source_descriptor=dict(job.source_descriptor_json or {}),
        target_descriptor=dict(job.target_descriptor_json or {}),
        status=job.status,
        state_history=list(job.state_history_json or []),
        report=dict(job.report_json or {}),
        error_code=job.error_code,
        error_message=job.error_message,
        requested_by=job.requested_by,
        request_id=job.request_id,
        started_at=as_utc(job.started_at),
        completed_at=as_utc(job.completed_at),
        reclaim_after=as_utc(job.reclaim_after),
        archived_at=as_utc(job.archived_at),
    )


class MigrationCoordinator:
    """Drive tier migrations through pending -> copying -> verifying -> cutover -> complete.

    Every state change is a compare-and-swap on the job's status, so two
    workers can never drive the same job. The source stays the active
    descriptor until the registry swap at the end of cutover; any failure
    before or during cutover leaves the tenant on its source.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        pools: ConnectionPoolManager,
        *,
        copier: TenantDataCopier | None = None,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._registry = registry
        self._pools = pools
        self._copier = copier or SqlTenantDataCopier(pools, settings=self._settings)
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or utc_now

    def _target_descriptor(
        self, record: TenantRecord, value: Any
    ) -> SharedDescriptor | SchemaDescriptor | DedicatedDescriptor:
        # A bare schema target gets the tenant's default schema name.
        if value == TIER_SCHEMA or value == {"kind": TIER_SCHEMA}:
            return SchemaDescriptor(schema_name=default_schema_name(record.slug, self._settings.schema_name_prefix))
        return descriptor_from_value(value)

    async def start(
        self,
        tenant_id: str,
        target_descriptor: Any,
        *,
        requested_by: str | None = None,
        request_id: str | None = None,
    ) -> MigrationJobView:
        record = await self._registry.get(tenant_id)
        target = self._target_descriptor(record, target_descriptor)
        job_id = uuid4().hex
        # Claim the tenant first; a rejected claim leaves no job behind.
        await self._registry.mark_migrating(tenant_id, target, job_id=job_id)
        job = MigrationJob(
            id=job_id,
            tenant_id=tenant_id,
            source_tier=record.isolation_tier,
            target_tier=target.kind,
            source_descriptor_json=descriptor_to_json(record.connection),
            target_descriptor_json=descriptor_to_json(target),
            status=MIGRATION_STATE_PENDING,
            state_history_json=[MIGRATION_STATE_PENDING],
            report_json={},
            requested_by=requested_by,
            request_id=request_id,
            started_at=self._clock(),
        )
        try:
            async with self._session_factory() as session:
                session.add(job)
                await session.commit()
                await record_event(
                    session=session,
                    tenant_id=tenant_id,
                    actor_type="operator",
                    actor_id=requested_by,
                    actor_role=None,
                    event_type="migration.started",
                    outcome="success",
                    resource_type="migration_job",
                    resource_id=job_id,
                    request_id=request_id,
                    metadata={"source_tier": record.isolation_tier, "target_tier": target.kind},
                    commit=True,
                    best_effort=True,
                )
        except Exception:
            await self._release_tenant(tenant_id, job_id)
            raise
        increment_counter(f"migration_jobs_total.{MIGRATION_STATE_PENDING}")
        logger.info(
            "migration_started job_id=%s tenant_id=%s source=%s target=%s",
            job_id,
            tenant_id,
            record.isolation_tier,
            target.kind,
        )
        return await self.get(job_id)

    async def get(self, job_id: str) -> MigrationJobView:
        async with self._session_factory() as session:
            job = await migrations_repo.get_job(session, job_id)
            if job is None:
                raise MigrationNotFoundError(f"No migration job {job_id!r}")
            return _to_view(job)

    async def list_jobs(
        self,
        *,
        tenant_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[MigrationJobView]:
        async with self._session_factory() as session:
            jobs = await migrations_repo.list_jobs(session, tenant_id=tenant_id, status=status, limit=limit)
            return [_to_view(job) for job in jobs]

    async def _advance(
        self,
        job_id: str,
        current: str,
        target: str,
        *,
        values: dict[str, Any] | None = None,
        report_updates: dict[str, Any] | None = None,
    ) -> MigrationJobView:
        if not _state_transition_allowed(current, target):
            raise MigrationStateError(f"Migration {job_id} cannot move from {current} to {target}")
        async with self._session_factory() as session:
            job = await migrations_repo.get_job(session, job_id)
            if job is None:
                raise MigrationNotFoundError(f"No migration job {job_id!r}")
            report = dict(job.report_json or {})
            report.update(report_updates or {})
            ok = await migrations_repo.update_job_if_status(
                session,
                job_id=job_id,
                expected_status=current,
                values={
                    **(values or {}),
                    "status": target,
                    "state_history_json": [*(job.state_history_json or []), target],
                    "report_json": report,
                },
            )
            if not ok:
                await session.rollback()
                raise MigrationStateError(f"Migration {job_id} is no longer {current}")
            await session.commit()
        increment_counter(f"migration_jobs_total.{target}")
        logger.info("migration_state_changed job_id=%s from=%s to=%s", job_id, current, target)
        return await self.get(job_id)

    async def run(self, job_id: str) -> MigrationJobView:
        job = await self.get(job_id)
        if job.terminal:
            return job
        if job.status != MIGRATION_STATE_PENDING:
            raise MigrationStateError(f"Migration {job_id} is already {job.status}")
        job = await self._advance(job_id, MIGRATION_STATE_PENDING, MIGRATION_STATE_COPYING)
        state = MIGRATION_STATE_COPYING
        verification: VerificationReport | None = None
        try:
            record = await self._registry.get(job.tenant_id)
            if record.active_migration_id != job_id:
                raise ConflictError(f"Tenant {job.tenant_id} is no longer owned by migration {job_id}")
            source = build_target_for_descriptor(
                record, descriptor_from_value(job.source_descriptor), self._settings
            )
            target = build_target_for_descriptor(
                record, descriptor_from_value(job.target_descriptor), self._settings
            )

            copied = await retry_async(
                lambda: self._copier.copy(source, target),
                policy=migration_retry_policy(),
            )
            await self._advance(
                job_id,
                MIGRATION_STATE_COPYING,
                MIGRATION_STATE_VERIFYING,
                report_updates={"copied": copied},
            )
            state = MIGRATION_STATE_VERIFYING

            verification = await self._copier.verify(source, target)
            if not verification.ok:
                raise MigrationVerificationError(
                    "Row count or checksum mismatch in " + ", ".join(verification.mismatches())
                )
            await self._advance(
                job_id,
                MIGRATION_STATE_VERIFYING,
                MIGRATION_STATE_CUTOVER,
                report_updates={"verification": verification.as_json()},
            )
        except Exception as exc:
            report = {}
            if verification is not None and not verification.ok:
                report["verification"] = verification.as_json()
            await self._mark_failed(job_id, state, exc, report_updates=report)
            raise
        except asyncio.CancelledError as exc:
            # Record the failure in a task the cancelled caller cannot interrupt.
            cleanup = asyncio.ensure_future(self._mark_failed(job_id, state, exc, code=ERROR_CANCELLED))
            cleanup.add_done_callback(_consume_result)
            await asyncio.shield(cleanup)
            raise

        # Shielded: a cancelled caller never leaves a half-finished cutover behind.
        task = asyncio.ensure_future(self._cutover_and_complete(job_id, record.id, source, target))
        task.add_done_callback(_consume_result)
        return await asyncio.shield(task)

    async def _cutover_and_complete(
        self,
        job_id: str,
        tenant_id: str,
        source: ConnectionTarget,
        target: ConnectionTarget,
    ) -> MigrationJobView:
        try:
            delta, final = await self._cutover(job_id, tenant_id, source, target)
        except Exception as exc:
            await self._mark_failed(job_id, MIGRATION_STATE_CUTOVER, exc)
            raise
        now = self._clock()
        completed = await self._advance(
            job_id,
            MIGRATION_STATE_CUTOVER,
            MIGRATION_STATE_COMPLETE,
            values={
                "completed_at": now,
                "reclaim_after": now + timedelta(seconds=self._settings.migration_source_grace_period_s),
            },
            report_updates={"delta": delta, "final_verification": final.as_json()},
        )
        await self._audit(completed, "migration.completed", "success")
        return completed

    async def _cutover(
        self,
        job_id: str,
        tenant_id: str,
        source: ConnectionTarget,
        target: ConnectionTarget,
    ) -> tuple[dict[str, int], VerificationReport]:
        freeze_s = self._settings.migration_write_freeze_max_s
        deadline = self._clock() + timedelta(seconds=freeze_s)
        await self._registry.freeze_writes(tenant_id, job_id=job_id, until=deadline)
        set_gauge(f"write_frozen_state.{tenant_id}", 1.0)
        try:
            try:
                delta, final = await asyncio.wait_for(
                    self._drain_and_verify(job_id, tenant_id, source, target),
                    timeout=freeze_s,
                )
            except asyncio.TimeoutError as exc:
                raise MigrationCutoverTimeoutError(
                    f"Cutover for tenant {tenant_id} exceeded the {freeze_s}s write freeze",
                ) from exc
            if self._clock() >= deadline:
                raise MigrationCutoverTimeoutError(
                    f"Cutover for tenant {tenant_id} exceeded the {freeze_s}s write freeze",
                )
            await self._registry.complete_cutover(tenant_id, job_id=job_id)
        except BaseException:
            # Roll back to the source before surfacing the failure.
            await self._release_tenant(tenant_id, job_id)
            raise
        finally:
            set_gauge(f"write_frozen_state.{tenant_id}", 0.0)
        return delta, final

    async def _drain_and_verify(
        self,
        job_id: str,
        tenant_id: str,
        source: ConnectionTarget,
        target: ConnectionTarget,
    ) -> tuple[dict[str, int], VerificationReport]:
        drained = await self._pools.wait_for_drain(
            tenant_id,
            timeout_s=min(self._settings.migration_drain_timeout_s, self._settings.migration_write_freeze_max_s),
            intent=INTENT_WRITE,
        )
        if not drained:
            raise MigrationStateError(f"In-flight writes for tenant {tenant_id} did not drain")
        delta = await self._copier.copy_delta(source, target)
        final = await self._copier.verify(source, target)
        if not final.ok:
            raise MigrationVerificationError(
                "Row count or checksum mismatch after delta copy in " + ", ".join(final.mismatches())
            )
        logger.info("migration_cutover_verified job_id=%s delta_rows=%s", job_id, sum(delta.values()))
        return delta, final

    async def _release_tenant(self, tenant_id: str, job_id: str) -> None:
        try:
            await self._registry.abort_migration(tenant_id, job_id=job_id)
        except ConflictError as exc:
            # Another migration already owns the tenant; it must not be disturbed.
            logger.warning("migration_abort_skipped tenant_id=%s job_id=%s", tenant_id, job_id, exc_info=exc)

    async def _mark_failed(
        self,
        job_id: str,
        current: str,
        exc: BaseException,
        *,
        report_updates: dict[str, Any] | None = None,
        code: str | None = None,
    ) -> None:
        if code is None:
            code = exc.code if isinstance(exc, SkillmeshError) else ERROR_FAILED
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        job = await self.get(job_id)
        if job.status != current:
            # An operator cancel or another worker already moved the job.
            current = job.status
        if current in TERMINAL_STATES:
            await self._release_tenant(job.tenant_id, job_id)
            return
        try:
            failed = await self._advance(
                job_id,
                current,
                MIGRATION_STATE_FAILED,
                values={"error_code": code, "error_message": message[:2000], "completed_at": self._clock()},
                report_updates=report_updates,
            )
        except MigrationStateError as state_exc:
            logger.warning("migration_fail_transition_lost job_id=%s", job_id, exc_info=state_exc)
            return
        finally:
            await self._release_tenant(job.tenant_id, job_id)
        logger.warning("migration_failed job_id=%s state=%s error_code=%s", job_id, current, code)
        await self._audit(failed, "migration.failed", "failure", error_code=code)

    async def fail(self, job_id: str, reason: str, *, actor_id: str | None = None) -> MigrationJobView:
        """Cancel a job that has not reached cutover; the tenant stays on its source."""
        job = await self.get(job_id)
        if job.terminal:
            raise MigrationStateError(f"Migration {job_id} is already {job.status}")
        if job.status == MIGRATION_STATE_CUTOVER:
            raise MigrationStateError(f"Migration {job_id} is in cutover and cannot be cancelled")
        failed = await self._advance(
            job_id,
            job.status,
            MIGRATION_STATE_FAILED,
            values={
                "error_code": ERROR_CANCELLED,
                "error_message": reason[:2000],
                "completed_at": self._clock(),
            },
        )
        await self._release_tenant(job.tenant_id, job_id)
        await self._audit(failed, "migration.cancelled", "success", actor_id=actor_id)
        return failed

    async def reclaim_expired_sources(self, now: datetime | None = None) -> list[str]:
        """Purge sources retained past the grace period and archive their jobs."""
        now = now or self._clock()
        async with self._session_factory() as session:
            jobs = await migrations_repo.list_reclaimable(session, status=MIGRATION_STATE_COMPLETE, now=now)
            job_ids = [job.id for job in jobs]
        reclaimed: list[str] = []
        for job_id in job_ids:
            try:
                if await self._reclaim_job(job_id, now):
                    reclaimed.append(job_id)
            except Exception as exc:  # noqa: BLE001 - one bad source must not block the rest
                increment_counter("migration_reclaim_failures_total")
                logger.warning("migration_reclaim_failed job_id=%s", job_id, exc_info=exc)
        return reclaimed

    async def _reclaim_job(self, job_id: str, now: datetime) -> bool:
        job = await self.get(job_id)
        record = await self._registry.get(job.tenant_id)
        source = descriptor_from_value(job.source_descriptor)
        purged: dict[str, int] = {}
        skipped_reason: str | None = None
        key = placement_key(source)
        if record.connection == source or record.pending_connection == source:
            skipped_reason = "source_in_use_by_tenant"
        elif key is not None and await self._registry.placement_owner(key, exclude_tenant_id=record.id):
            skipped_reason = "source_claimed_by_other_tenant"
        else:
            target = build_target_for_descriptor(record, source, self._settings)
            if source.kind == TIER_DEDICATED:
                # The database itself belongs to infrastructure; only our pool goes away.
                await self._pools.dispose(target.pool_key)
            else:
                purged = await self._copier.purge(target)
        async with self._session_factory() as session:
            row = await migrations_repo.get_job(session, job_id)
            if row is None or row.archived_at is not None:
                return False
            row.archived_at = now
            row.report_json = {
                **(row.report_json or {}),
                "reclaimed": {"rows": purged, "skipped_reason": skipped_reason},
            }
            await session.commit()
        if record.previous_connection == source:
            await self._registry.release_previous(record.id)
        increment_counter("migration_sources_reclaimed_total")
        logger.info("migration_source_reclaimed job_id=%s tenant_id=%s skipped=%s", job_id, record.id, skipped_reason)
        await self._audit(await self.get(job_id), "migration.source_reclaimed", "success")
        return True

    async def _audit(
        self,
        job: MigrationJobView,
        event_type: str,
        outcome: str,
        *,
        actor_id: str | None = None,
        error_code: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            await record_event(
                session=session,
                tenant_id=job.tenant_id,
                actor_type="system" if actor_id is None else "operator",
                actor_id=actor_id or job.requested_by,
                actor_role=None,
                event_type=event_type,
                outcome=outcome,
                resource_type="migration_job",
                resource_id=job.id,
                request_id=job.request_id,
                metadata={
                    "status": job.status,
                    "source_tier": job.source_tier,
                    "target_tier": job.target_tier,
                },
                error_code=error_code,
                commit=True,
                best_effort=True,
            )


def _consume_result(task: asyncio.Task[Any]) -> None:
    # Mark cutover failures as retrieved when the caller was cancelled.
    if not task.cancelled():
        task.exception()
