from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from skillmesh.apps.api.deps import OperatorPrincipal, get_runtime, require_role
from skillmesh.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillmesh.apps.api.response import SuccessEnvelope, success_response
from skillmesh.persistence.db import pool_stats
from skillmesh.services.auth.operator_keys import ROLE_OPERATOR, ROLE_VIEWER
from skillmesh.services.migrations.queue import get_queue_depth
from skillmesh.services.runtime import Runtime
from skillmesh.services.telemetry import availability, counters_snapshot, gauges_snapshot, p95_latency


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class PoolsResponse(BaseModel):
    tenant_pools: list[dict[str, Any]]
    control_plane: dict[str, int | None]
    routing_cache_entries: int


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    p95_latency_ms: float | None
    availability_pct: float | None
    migration_queue_depth: int | None


class DisposeIdleResponse(BaseModel):
    disposed: list[str]


@router.get("/pools", response_model=SuccessEnvelope[PoolsResponse])
async def pools(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    principal: OperatorPrincipal = Depends(require_role(ROLE_VIEWER)),
) -> dict:
    payload = PoolsResponse(
        tenant_pools=runtime.pools.stats(),
        control_plane=pool_stats(),
        routing_cache_entries=len(runtime.cache),
    )
    return success_response(request=request, data=payload)


@router.post("/pools/dispose-idle", response_model=SuccessEnvelope[DisposeIdleResponse])
async def dispose_idle_pools(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    principal: OperatorPrincipal = Depends(require_role(ROLE_OPERATOR)),
) -> dict:
    disposed = await runtime.pools.dispose_idle()
    return success_response(request=request, data=DisposeIdleResponse(disposed=disposed))


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
    principal: OperatorPrincipal = Depends(require_role(ROLE_VIEWER)),
) -> dict:
    payload = MetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        p95_latency_ms=p95_latency(window_s),
        availability_pct=availability(window_s),
        migration_queue_depth=await get_queue_depth(),
    )
    return success_response(request=request, data=payload)
