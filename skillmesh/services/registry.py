from __future__ import annotations

import asyncio
from datetime import datetime
import logging
import re
from typing import Any, Callable
from weakref import WeakValueDictionary

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillmesh.core.config import Settings, get_settings
from skillmesh.core.errors import (
    ConflictError,
    RegistryUnavailableError,
    TenantNotFoundError,
    ValidationError,
)
from skillmesh.domain.models import Tenant
from skillmesh.domain.tenancy import (
    ISOLATION_TIERS,
    LOOKUP_ID,
    LOOKUP_SLUG,
    SLUG_PATTERN,
    STATUS_ACTIVE,
    STATUS_DECOMMISSIONED,
    STATUS_MIGRATING,
    STATUS_SUSPENDED,
    SUBSCRIPTION_TIERS,
    TIER_DEDICATED,
    TIER_SCHEMA,
    SchemaDescriptor,
    SharedDescriptor,
    TenantRecord,
    TenantUpsert,
    default_schema_name,
    descriptor_from_value,
    descriptor_to_json,
    placement_key,
)
from skillmesh.persistence.db import SessionLocal
from skillmesh.persistence.repos import tenants as tenants_repo
from skillmesh.services.routing.cache import RoutingCache
from skillmesh.services.routing.invalidation import InvalidationBroadcaster


logger = logging.getLogger(__name__)

_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
_SETTABLE_STATUSES = (STATUS_ACTIVE, STATUS_SUSPENDED, STATUS_DECOMMISSIONED)
# Columns an upsert compares to decide whether anything changed.
_UPSERT_COLUMNS = (
    "name",
    "slug",
    "isolation_tier",
    "connection_json",
    "placement_key",
    "subscription_tier",
    "status",
    "max_users",
    "max_storage_gb",
    "compliance_flags_json",
)


class TenantRegistry:
    """Single source of truth for tenant -> tier -> connection target.

    Mutations for one tenant are serialized in-process with a per-tenant lock
    and across processes with a version compare-and-swap; every successful
    mutation invalidates cached routing entries before returning.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession] | None = None,
        *,
        cache: RoutingCache | None = None,
        broadcaster: InvalidationBroadcaster | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._cache = cache
        self._broadcaster = broadcaster
        self._settings = settings or get_settings()
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    async def _invalidate(self, tenant_id: str) -> None:
        if self._cache is not None:
            self._cache.invalidate(tenant_id)
        if self._broadcaster is not None:
            await self._broadcaster.publish(tenant_id)

    async def resolve(self, identifier: str, *, lookup: str = LOOKUP_ID) -> TenantRecord:
        timeout_s = self._settings.registry_lookup_timeout_ms / 1000.0
        try:
            return await asyncio.wait_for(self._resolve(identifier, lookup), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            logger.warning("registry_lookup_timeout identifier=%s lookup=%s", identifier, lookup)
            raise RegistryUnavailableError("Tenant registry lookup timed out", retry_after_s=1) from exc

    async def _resolve(self, identifier: str, lookup: str) -> TenantRecord:
        if lookup not in (LOOKUP_ID, LOOKUP_SLUG):
            raise ValueError(f"Unsupported lookup: {lookup}")
        async with self._session_factory() as session:
            try:
                if lookup == LOOKUP_SLUG:
                    row = await tenants_repo.get_tenant_by_slug(session, identifier.lower())
                else:
                    row = await tenants_repo.get_tenant(session, identifier)
            except SQLAlchemyError as exc:
                logger.warning("registry_lookup_failed identifier=%s", identifier, exc_info=exc)
                raise RegistryUnavailableError("Tenant registry lookup failed", retry_after_s=1) from exc
            if row is None:
                raise TenantNotFoundError(f"No tenant for {lookup} {identifier!r}")
            return tenants_repo.to_record(row)

    async def get(self, tenant_id: str) -> TenantRecord:
        return await self.resolve(tenant_id, lookup=LOOKUP_ID)

    async def list_tenants(self, *, status: str | None = None) -> list[TenantRecord]:
        async with self._session_factory() as session:
            rows = await tenants_repo.list_tenants(session, status=status)
            return [tenants_repo.to_record(row) for row in rows]

    async def placement_owner(self, key: str, *, exclude_tenant_id: str) -> str | None:
        async with self._session_factory() as session:
            owner = await tenants_repo.get_placement_owner(session, key, exclude_tenant_id=exclude_tenant_id)
            return owner.id if owner is not None else None

    def _normalize(self, data: TenantUpsert) -> dict[str, Any]:
        if not data.id or not _TENANT_ID_PATTERN.match(data.id):
            raise ValidationError("Tenant id must be 1-64 characters of letters, digits, '.', '_' or '-'")
        name = (data.name or "").strip()
        if not name:
            raise ValidationError("Tenant name is required")
        slug = (data.slug or "").strip().lower()
        if not SLUG_PATTERN.match(slug):
            raise ValidationError("Slug must be a DNS label (lowercase letters, digits, hyphens)")
        if data.isolation_tier not in ISOLATION_TIERS:
            raise ValidationError(
                f"Isolation tier must be one of {', '.join(ISOLATION_TIERS)}; got {data.isolation_tier!r}"
            )
        if data.status == STATUS_MIGRATING:
            raise ValidationError("Status migrating is set by the migration coordinator only")
        if data.status not in _SETTABLE_STATUSES:
            raise ValidationError(f"Unsupported status {data.status!r}")
        if data.subscription_tier not in SUBSCRIPTION_TIERS:
            raise ValidationError(f"Unsupported subscription tier {data.subscription_tier!r}")
        for field_name in ("max_users", "max_storage_gb"):
            value = getattr(data, field_name)
            if value is not None and (not isinstance(value, int) or value < 0):
                raise ValidationError(f"{field_name} must be a non-negative integer")
        flags = sorted({str(flag).strip() for flag in data.compliance_flags if str(flag).strip()})

        if data.connection is None:
            if data.isolation_tier == TIER_DEDICATED:
                raise ValidationError("Dedicated tier requires a connection descriptor with a dsn")
            if data.isolation_tier == TIER_SCHEMA:
                descriptor = SchemaDescriptor(
                    schema_name=default_schema_name(slug, self._settings.schema_name_prefix)
                )
            else:
                descriptor = SharedDescriptor()
        else:
            descriptor = descriptor_from_value(data.connection)
        if descriptor.kind != data.isolation_tier:
            raise ValidationError(
                f"Connection descriptor kind {descriptor.kind!r} does not match tier {data.isolation_tier!r}"
            )
        return {
            "name": name,
            "slug": slug,
            "isolation_tier": data.isolation_tier,
            "connection_json": descriptor_to_json(descriptor),
            "placement_key": placement_key(descriptor),
            "subscription_tier": data.subscription_tier,
            "status": data.status,
            "max_users": data.max_users,
            "max_storage_gb": data.max_storage_gb,
            "compliance_flags_json": flags,
        }

    async def upsert(self, data: TenantUpsert) -> TenantRecord:
        values = self._normalize(data)
        async with self._lock_for(data.id):
            async with self._session_factory() as session:
                existing = await tenants_repo.get_tenant(session, data.id)
                slug_owner = await tenants_repo.get_tenant_by_slug(session, values["slug"])
                if slug_owner is not None and slug_owner.id != data.id:
                    raise ValidationError(f"Slug {values['slug']!r} is already in use")
                if values["placement_key"] is not None:
                    owner = await tenants_repo.get_placement_owner(
                        session, values["placement_key"], exclude_tenant_id=data.id
                    )
                    if owner is not None:
                        raise ValidationError(f"Connection target is already assigned to tenant {owner.id}")

                if existing is None:
                    session.add(Tenant(id=data.id, version=1, **values))
                    try:
                        await session.commit()
                    except IntegrityError as exc:
                        await session.rollback()
                        raise ValidationError("Tenant id, slug or connection target is not unique") from exc
                    logger.info("tenant_created tenant_id=%s tier=%s", data.id, values["isolation_tier"])
                else:
                    changes = {
                        column: value
                        for column, value in values.items()
                        if getattr(existing, column) != value
                    }
                    if not changes:
                        return tenants_repo.to_record(existing)
                    if existing.status == STATUS_DECOMMISSIONED:
                        raise ConflictError(f"Tenant {data.id} is decommissioned")
                    if existing.active_migration_id is not None:
                        self._check_migrating_changes(data.id, changes)
                        changes.pop("status", None)
                        if not changes:
                            return tenants_repo.to_record(existing)
                    ok = await tenants_repo.compare_and_swap(
                        session,
                        tenant_id=data.id,
                        expected_version=existing.version,
                        values=changes,
                    )
                    if not ok:
                        await session.rollback()
                        raise ConflictError(f"Tenant {data.id} was modified concurrently")
                    try:
                        await session.commit()
                    except IntegrityError as exc:
                        await session.rollback()
                        raise ValidationError("Tenant slug or connection target is not unique") from exc
                    logger.info("tenant_updated tenant_id=%s fields=%s", data.id, ",".join(sorted(changes)))
            await self._invalidate(data.id)
        return await self.get(data.id)

    @staticmethod
    def _check_migrating_changes(tenant_id: str, changes: dict[str, Any]) -> None:
        routing_fields = {"isolation_tier", "connection_json", "placement_key"} & set(changes)
        if routing_fields:
            raise ConflictError(f"Tenant {tenant_id} has a migration in flight; tier changes are not allowed")
        if changes.get("status") in (STATUS_SUSPENDED, STATUS_DECOMMISSIONED):
            raise ConflictError(f"Tenant {tenant_id} has a migration in flight; cancel it first")

    async def mark_migrating(
        self,
        tenant_id: str,
        target_descriptor: Any,
        *,
        job_id: str,
    ) -> TenantRecord:
        target = descriptor_from_value(target_descriptor)
        target_json = descriptor_to_json(target)
        target_placement = placement_key(target)
        async with self._lock_for(tenant_id):
            async with self._session_factory() as session:
                row = await tenants_repo.get_tenant(session, tenant_id)
                if row is None:
                    raise TenantNotFoundError(f"No tenant for id {tenant_id!r}")
                if row.active_migration_id is not None or row.status == STATUS_MIGRATING:
                    raise ConflictError(
                        f"Tenant {tenant_id} already has migration {row.active_migration_id} in flight"
                    )
                if row.status != STATUS_ACTIVE:
                    raise ConflictError(f"Tenant {tenant_id} is {row.status}; only active tenants can migrate")
                if target_json == row.connection_json:
                    raise ValidationError(f"Tenant {tenant_id} already uses the requested connection target")
                if target_placement is not None:
                    owner = await tenants_repo.get_placement_owner(
                        session, target_placement, exclude_tenant_id=tenant_id
                    )
                    if owner is not None:
                        raise ValidationError(f"Connection target is already assigned to tenant {owner.id}")
                ok = await tenants_repo.compare_and_swap(
                    session,
                    tenant_id=tenant_id,
                    expected_version=row.version,
                    values={
                        "status": STATUS_MIGRATING,
                        "pending_connection_json": target_json,
                        "pending_placement_key": target_placement,
                        "active_migration_id": job_id,
                    },
                    conditions=(Tenant.active_migration_id.is_(None),),
                )
                if not ok:
                    await session.rollback()
                    raise ConflictError(f"Tenant {tenant_id} was modified concurrently")
                await session.commit()
            logger.info("tenant_marked_migrating tenant_id=%s job_id=%s target=%s", tenant_id, job_id, target.kind)
            await self._invalidate(tenant_id)
        return await self.get(tenant_id)

    async def set_status(self, tenant_id: str, status: str) -> TenantRecord:
        if status not in _SETTABLE_STATUSES:
            raise ValidationError(f"Unsupported status {status!r}")
        async with self._lock_for(tenant_id):
            async with self._session_factory() as session:
                row = await tenants_repo.get_tenant(session, tenant_id)
                if row is None:
                    raise TenantNotFoundError(f"No tenant for id {tenant_id!r}")
                if row.status == status:
                    return tenants_repo.to_record(row)
                if row.active_migration_id is not None:
                    raise ConflictError(f"Tenant {tenant_id} has a migration in flight; cancel it first")
                if row.status == STATUS_DECOMMISSIONED:
                    raise ConflictError(f"Tenant {tenant_id} is decommissioned")
                await self._swap(session, row, {"status": status})
            logger.info("tenant_status_changed tenant_id=%s status=%s", tenant_id, status)
            await self._invalidate(tenant_id)
        return await self.get(tenant_id)

    async def freeze_writes(self, tenant_id: str, *, job_id: str, until: datetime | None) -> TenantRecord:
        async with self._lock_for(tenant_id):
            async with self._session_factory() as session:
                row = await self._migration_row(session, tenant_id, job_id)
                await self._swap(session, row, {"write_freeze_until": until})
            await self._invalidate(tenant_id)
        return await self.get(tenant_id)

    async def complete_cutover(self, tenant_id: str, *, job_id: str) -> TenantRecord:
        # One UPDATE swaps the active descriptor; routers see either the source or the target.
        async with self._lock_for(tenant_id):
            async with self._session_factory() as session:
                row = await self._migration_row(session, tenant_id, job_id)
                if not row.pending_connection_json:
                    raise ConflictError(f"Tenant {tenant_id} has no pending connection target")
                target = descriptor_from_value(row.pending_connection_json)
                await self._swap(
                    session,
                    row,
                    {
                        "isolation_tier": target.kind,
                        "connection_json": descriptor_to_json(target),
                        "placement_key": row.pending_placement_key,
                        "previous_connection_json": row.connection_json,
                        "pending_connection_json": None,
                        "pending_placement_key": None,
                        "active_migration_id": None,
                        "write_freeze_until": None,
                        "status": STATUS_ACTIVE,
                    },
                )
            logger.info("tenant_cutover_completed tenant_id=%s job_id=%s tier=%s", tenant_id, job_id, target.kind)
            await self._invalidate(tenant_id)
        return await self.get(tenant_id)

    async def abort_migration(self, tenant_id: str, *, job_id: str) -> TenantRecord:
        async with self._lock_for(tenant_id):
            async with self._session_factory() as session:
                row = await tenants_repo.get_tenant(session, tenant_id)
                if row is None:
                    raise TenantNotFoundError(f"No tenant for id {tenant_id!r}")
                if row.active_migration_id is None:
                    return tenants_repo.to_record(row)
                if row.active_migration_id != job_id:
                    raise ConflictError(f"Tenant {tenant_id} is owned by migration {row.active_migration_id}")
                await self._swap(
                    session,
                    row,
                    {
                        "pending_connection_json": None,
                        "pending_placement_key": None,
                        "active_migration_id": None,
                        "write_freeze_until": None,
                        "status": STATUS_ACTIVE,
                    },
                )
            logger.info("tenant_migration_aborted tenant_id=%s job_id=%s", tenant_id, job_id)
            await self._invalidate(tenant_id)
        return await self.get(tenant_id)

    async def release_previous(self, tenant_id: str) -> TenantRecord:
        async with self._lock_for(tenant_id):
            async with self._session_factory() as session:
                row = await tenants_repo.get_tenant(session, tenant_id)
                if row is None:
                    raise TenantNotFoundError(f"No tenant for id {tenant_id!r}")
                if row.previous_connection_json is not None:
                    await self._swap(session, row, {"previous_connection_json": None})
            await self._invalidate(tenant_id)
        return await self.get(tenant_id)

    async def _migration_row(self, session: AsyncSession, tenant_id: str, job_id: str) -> Tenant:
        row = await tenants_repo.get_tenant(session, tenant_id)
        if row is None:
            raise TenantNotFoundError(f"No tenant for id {tenant_id!r}")
        if row.active_migration_id != job_id:
            raise ConflictError(f"Tenant {tenant_id} is not owned by migration {job_id}")
        return row

    async def _swap(self, session: AsyncSession, row: Tenant, values: dict[str, Any]) -> None:
        ok = await tenants_repo.compare_and_swap(
            session,
            tenant_id=row.id,
            expected_version=row.version,
            values=values,
        )
        if not ok:
            await session.rollback()
            raise ConflictError(f"Tenant {row.id} was modified concurrently")
        await session.commit()
