from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from skillmesh.apps.api.deps import get_runtime
from skillmesh.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillmesh.apps.api.response import SuccessEnvelope, success_response
from skillmesh.services.routing.hints import extract_tenant_hint, request_context_from_request
from skillmesh.services.runtime import Runtime


router = APIRouter(prefix="/routing", tags=["routing"], responses=DEFAULT_ERROR_RESPONSES)


class ResolvedTargetResponse(BaseModel):
    # Redacted connection target; credentials never leave the process.
    tenant_id: str
    tier: str
    pool_key: str
    dsn: str
    schema_name: str | None
    row_filter_tenant_id: str | None
    hint_source: str
    intent: str


@router.get("/resolve", response_model=SuccessEnvelope[ResolvedTargetResponse])
async def resolve_connection(
    request: Request,
    intent: Literal["read", "write"] = Query(default="read"),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    ctx = request_context_from_request(request, runtime.settings)
    hint = extract_tenant_hint(ctx, runtime.settings)
    target = await runtime.router.resolve_hint(hint, intent=intent)
    payload = ResolvedTargetResponse(**target.redacted(), hint_source=hint.source, intent=intent)
    return success_response(request=request, data=payload)
