from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillmesh.domain.models import MigrationJob


async def get_job(session: AsyncSession, job_id: str) -> MigrationJob | None:
    result = await session.execute(select(MigrationJob).where(MigrationJob.id == job_id))
    return result.scalar_one_or_none()


async def list_jobs(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[MigrationJob]:
    stmt = select(MigrationJob).order_by(MigrationJob.started_at.desc(), MigrationJob.id).limit(limit)
    if tenant_id is not None:
        stmt = stmt.where(MigrationJob.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(MigrationJob.status == status)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_job_if_status(
    session: AsyncSession,
    *,
    job_id: str,
    expected_status: str,
    values: dict[str, Any],
) -> bool:
    # Claim transitions atomically so two workers cannot drive the same job.
    stmt = (
        update(MigrationJob)
        .where(MigrationJob.id == job_id, MigrationJob.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def list_reclaimable(session: AsyncSession, *, status: str, now: datetime) -> list[MigrationJob]:
    stmt = (
        select(MigrationJob)
        .where(
            MigrationJob.status == status,
            MigrationJob.archived_at.is_(None),
            MigrationJob.reclaim_after.is_not(None),
            MigrationJob.reclaim_after <= now,
        )
        .order_by(MigrationJob.reclaim_after)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
