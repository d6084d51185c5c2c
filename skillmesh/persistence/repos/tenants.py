from __future__ import annotations

from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from skillmesh.domain.models import Tenant
from skillmesh.domain.tenancy import TenantRecord, as_utc, descriptor_from_value, utc_now


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_tenant_by_slug(session: AsyncSession, slug: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.slug == slug))
    return result.scalar_one_or_none()


async def list_tenants(session: AsyncSession, *, status: str | None = None, limit: int = 500) -> list[Tenant]:
    stmt = select(Tenant).order_by(Tenant.id).limit(limit)
    if status is not None:
        stmt = stmt.where(Tenant.status == status)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_placement_owner(session: AsyncSession, key: str, *, exclude_tenant_id: str) -> Tenant | None:
    # A schema or dedicated database is claimed by an active or a pending descriptor.
    stmt = (
        select(Tenant)
        .where(
            or_(Tenant.placement_key == key, Tenant.pending_placement_key == key),
            Tenant.id != exclude_tenant_id,
        )
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def compare_and_swap(
    session: AsyncSession,
    *,
    tenant_id: str,
    expected_version: int,
    values: dict[str, Any],
    conditions: tuple[ColumnElement[bool], ...] = (),
) -> bool:
    # Apply a mutation only if nobody else changed the row since it was read.
    stmt = (
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.version == expected_version, *conditions)
        .values(**values, version=Tenant.version + 1, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


def to_record(row: Tenant) -> TenantRecord:
    return TenantRecord(
        id=row.id,
        name=row.name,
        slug=row.slug,
        isolation_tier=row.isolation_tier,
        connection=descriptor_from_value(row.connection_json),
        pending_connection=(
            descriptor_from_value(row.pending_connection_json) if row.pending_connection_json else None
        ),
        previous_connection=(
            descriptor_from_value(row.previous_connection_json) if row.previous_connection_json else None
        ),
        subscription_tier=row.subscription_tier,
        status=row.status,
        version=int(row.version),
        max_users=row.max_users,
        max_storage_gb=row.max_storage_gb,
        compliance_flags=tuple(row.compliance_flags_json or ()),
        active_migration_id=row.active_migration_id,
        write_freeze_until=as_utc(row.write_freeze_until),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )
