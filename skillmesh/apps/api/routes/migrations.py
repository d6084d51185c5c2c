from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from skillmesh.apps.api.deps import OperatorPrincipal, get_coordinator, require_role
from skillmesh.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillmesh.apps.api.response import SuccessEnvelope, get_request_id, success_response
from skillmesh.services.auth.operator_keys import ROLE_OPERATOR, ROLE_VIEWER
from skillmesh.services.migrations.coordinator import (
    MIGRATION_STATE_PENDING,
    MigrationCoordinator,
    MigrationJobView,
)
from skillmesh.services.migrations.queue import MigrationJobPayload, enqueue_migration_job


router = APIRouter(prefix="/admin/migrations", tags=["migrations"], responses=DEFAULT_ERROR_RESPONSES)


class MigrationStartRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    # Mapping, "kind:value" shorthand, or bare "schema" for the default schema name.
    target: dict[str, Any] | str


class MigrationCancelRequest(BaseModel):
    reason: str = Field(default="cancelled by operator", max_length=2000)


class MigrationJobResponse(BaseModel):
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


class MigrationJobListResponse(BaseModel):
    items: list[MigrationJobResponse]


def _job_response(view: MigrationJobView) -> MigrationJobResponse:
    return MigrationJobResponse.model_validate(view.as_json())


@router.post("", status_code=202, response_model=SuccessEnvelope[MigrationJobResponse])
async def start_migration(
    body: MigrationStartRequest,
    request: Request,
    coordinator: MigrationCoordinator = Depends(get_coordinator),
    principal: OperatorPrincipal = Depends(require_role(ROLE_OPERATOR)),
) -> dict:
    request_id = get_request_id(request)
    job = await coordinator.start(
        body.tenant_id,
        body.target,
        requested_by=principal.key_id,
        request_id=request_id,
    )
    await enqueue_migration_job(
        MigrationJobPayload(job_id=job.id, tenant_id=job.tenant_id, request_id=request_id),
        coordinator=coordinator,
    )
    job = await coordinator.get(job.id)
    return success_response(request=request, data=_job_response(job))


@router.get("", response_model=SuccessEnvelope[MigrationJobListResponse])
async def list_migrations(
    request: Request,
    tenant_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    coordinator: MigrationCoordinator = Depends(get_coordinator),
    principal: OperatorPrincipal = Depends(require_role(ROLE_VIEWER)),
) -> dict:
    jobs = await coordinator.list_jobs(tenant_id=tenant_id, status=status, limit=limit)
    payload = MigrationJobListResponse(items=[_job_response(job) for job in jobs])
    return success_response(request=request, data=payload)


@router.get("/{job_id}", response_model=SuccessEnvelope[MigrationJobResponse])
async def get_migration(
    job_id: str,
    request: Request,
    coordinator: MigrationCoordinator = Depends(get_coordinator),
    principal: OperatorPrincipal = Depends(require_role(ROLE_VIEWER)),
) -> dict:
    job = await coordinator.get(job_id)
    return success_response(request=request, data=_job_response(job))


@router.post("/{job_id}/run", status_code=202, response_model=SuccessEnvelope[MigrationJobResponse])
async def run_migration(
    job_id: str,
    request: Request,
    coordinator: MigrationCoordinator = Depends(get_coordinator),
    principal: OperatorPrincipal = Depends(require_role(ROLE_OPERATOR)),
) -> dict:
    # Re-enqueue a pending job, e.g. after a queue outage dropped the first handoff.
    job = await coordinator.get(job_id)
    if job.status == MIGRATION_STATE_PENDING:
        await enqueue_migration_job(
            MigrationJobPayload(job_id=job.id, tenant_id=job.tenant_id, request_id=get_request_id(request)),
            coordinator=coordinator,
        )
        job = await coordinator.get(job_id)
    return success_response(request=request, data=_job_response(job))


@router.post("/{job_id}/cancel", response_model=SuccessEnvelope[MigrationJobResponse])
async def cancel_migration(
    job_id: str,
    body: MigrationCancelRequest,
    request: Request,
    coordinator: MigrationCoordinator = Depends(get_coordinator),
    principal: OperatorPrincipal = Depends(require_role(ROLE_OPERATOR)),
) -> dict:
    job = await coordinator.fail(job_id, body.reason, actor_id=principal.key_id)
    return success_response(request=request, data=_job_response(job))
