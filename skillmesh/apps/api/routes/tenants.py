from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from skillmesh.apps.api.deps import OperatorPrincipal, get_db, get_registry, require_role
from skillmesh.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillmesh.apps.api.response import SuccessEnvelope, success_response
from skillmesh.domain.tenancy import (
    STATUS_ACTIVE,
    STATUS_DECOMMISSIONED,
    STATUS_SUSPENDED,
    DedicatedDescriptor,
    SchemaDescriptor,
    SharedDescriptor,
    TenantRecord,
    TenantUpsert,
    redact_dsn,
)
from skillmesh.services.audit import get_request_context, record_event
from skillmesh.services.auth.operator_keys import ROLE_OPERATOR, ROLE_VIEWER
from skillmesh.services.registry import TenantRegistry


router = APIRouter(prefix="/admin/tenants", tags=["tenants"], responses=DEFAULT_ERROR_RESPONSES)


class TenantUpsertRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=1, max_length=63)
    isolation_tier: str
    # Mapping or "kind:value" shorthand; omitted means the tier's default.
    connection: dict[str, Any] | str | None = None
    subscription_tier: str = "starter"
    status: str = STATUS_ACTIVE
    max_users: int | None = None
    max_storage_gb: int | None = None
    compliance_flags: list[str] = Field(default_factory=list)


class TenantResponse(BaseModel):
    id: str
    name: str
    slug: str
    isolation_tier: str
    connection: dict[str, Any]
    pending_connection: dict[str, Any] | None
    previous_connection: dict[str, Any] | None
    subscription_tier: str
    status: str
    version: int
    max_users: int | None
    max_storage_gb: int | None
    compliance_flags: list[str]
    active_migration_id: str | None
    write_freeze_until: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class TenantListResponse(BaseModel):
    items: list[TenantResponse]


def _descriptor_json(
    descriptor: SharedDescriptor | SchemaDescriptor | DedicatedDescriptor | None,
) -> dict[str, Any] | None:
    if descriptor is None:
        return None
    payload = descriptor.model_dump()
    if isinstance(descriptor, DedicatedDescriptor):
        payload["dsn"] = redact_dsn(descriptor.dsn)
    return payload


def tenant_response(record: TenantRecord) -> TenantResponse:
    return TenantResponse(
        id=record.id,
        name=record.name,
        slug=record.slug,
        isolation_tier=record.isolation_tier,
        connection=_descriptor_json(record.connection) or {},
        pending_connection=_descriptor_json(record.pending_connection),
        previous_connection=_descriptor_json(record.previous_connection),
        subscription_tier=record.subscription_tier,
        status=record.status,
        version=record.version,
        max_users=record.max_users,
        max_storage_gb=record.max_storage_gb,
        compliance_flags=list(record.compliance_flags),
        active_migration_id=record.active_migration_id,
        write_freeze_until=record.write_freeze_until,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


async def _audit_tenant_change(
    db: AsyncSession,
    request: Request,
    principal: OperatorPrincipal,
    *,
    tenant_id: str,
    event_type: str,
    metadata: dict[str, Any],
) -> None:
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=tenant_id,
        actor_type=principal.auth_method,
        actor_id=principal.key_id,
        actor_role=principal.role,
        event_type=event_type,
        outcome="success",
        resource_type="tenant",
        resource_id=tenant_id,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata=metadata,
        commit=True,
        best_effort=True,
    )


@router.get("", response_model=SuccessEnvelope[TenantListResponse])
async def list_tenants(
    request: Request,
    status: str | None = Query(default=None),
    registry: TenantRegistry = Depends(get_registry),
    principal: OperatorPrincipal = Depends(require_role(ROLE_VIEWER)),
) -> dict:
    records = await registry.list_tenants(status=status)
    payload = TenantListResponse(items=[tenant_response(record) for record in records])
    return success_response(request=request, data=payload)


@router.get("/{tenant_id}", response_model=SuccessEnvelope[TenantResponse])
async def get_tenant(
    tenant_id: str,
    request: Request,
    registry: TenantRegistry = Depends(get_registry),
    principal: OperatorPrincipal = Depends(require_role(ROLE_VIEWER)),
) -> dict:
    record = await registry.get(tenant_id)
    return success_response(request=request, data=tenant_response(record))


@router.put("/{tenant_id}", response_model=SuccessEnvelope[TenantResponse])
async def upsert_tenant(
    tenant_id: str,
    body: TenantUpsertRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: TenantRegistry = Depends(get_registry),
    principal: OperatorPrincipal = Depends(require_role(ROLE_OPERATOR)),
) -> dict:
    record = await registry.upsert(
        TenantUpsert(
            id=tenant_id,
            name=body.name,
            slug=body.slug,
            isolation_tier=body.isolation_tier,
            connection=body.connection,
            subscription_tier=body.subscription_tier,
            status=body.status,
            max_users=body.max_users,
            max_storage_gb=body.max_storage_gb,
            compliance_flags=tuple(body.compliance_flags),
        )
    )
    await _audit_tenant_change(
        db,
        request,
        principal,
        tenant_id=tenant_id,
        event_type="tenant.upserted",
        metadata={"isolation_tier": record.isolation_tier, "status": record.status, "version": record.version},
    )
    return success_response(request=request, data=tenant_response(record))


async def _set_status(
    tenant_id: str,
    status: str,
    request: Request,
    db: AsyncSession,
    registry: TenantRegistry,
    principal: OperatorPrincipal,
) -> dict:
    record = await registry.set_status(tenant_id, status)
    await _audit_tenant_change(
        db,
        request,
        principal,
        tenant_id=tenant_id,
        event_type=f"tenant.status.{status}",
        metadata={"status": status, "version": record.version},
    )
    return success_response(request=request, data=tenant_response(record))


@router.post("/{tenant_id}/suspend", response_model=SuccessEnvelope[TenantResponse])
async def suspend_tenant(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: TenantRegistry = Depends(get_registry),
    principal: OperatorPrincipal = Depends(require_role(ROLE_OPERATOR)),
) -> dict:
    return await _set_status(tenant_id, STATUS_SUSPENDED, request, db, registry, principal)


@router.post("/{tenant_id}/reactivate", response_model=SuccessEnvelope[TenantResponse])
async def reactivate_tenant(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: TenantRegistry = Depends(get_registry),
    principal: OperatorPrincipal = Depends(require_role(ROLE_OPERATOR)),
) -> dict:
    return await _set_status(tenant_id, STATUS_ACTIVE, request, db, registry, principal)


@router.post("/{tenant_id}/decommission", response_model=SuccessEnvelope[TenantResponse])
async def decommission_tenant(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: TenantRegistry = Depends(get_registry),
    principal: OperatorPrincipal = Depends(require_role(ROLE_OPERATOR)),
) -> dict:
    return await _set_status(tenant_id, STATUS_DECOMMISSIONED, request, db, registry, principal)
