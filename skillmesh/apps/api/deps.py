from __future__ import annotations

from typing import AsyncGenerator, AsyncIterator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skillmesh.core.config import get_settings
from skillmesh.domain.models import OperatorKey
from skillmesh.domain.tenancy import INTENT_READ, INTENT_WRITE
from skillmesh.persistence.db import get_session
from skillmesh.services.audit import get_request_context, record_event
from skillmesh.services.auth.operator_keys import find_active_key, normalize_role, role_allows
from skillmesh.services.migrations.coordinator import MigrationCoordinator
from skillmesh.services.pools import ConnectionPoolManager, ScopedConnection
from skillmesh.services.registry import TenantRegistry
from skillmesh.services.routing.hints import request_context_from_request
from skillmesh.services.routing.router import TenantRouter
from skillmesh.services.runtime import Runtime


_WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_registry(runtime: Runtime = Depends(get_runtime)) -> TenantRegistry:
    return runtime.registry


def get_router(runtime: Runtime = Depends(get_runtime)) -> TenantRouter:
    return runtime.router


def get_pool_manager(runtime: Runtime = Depends(get_runtime)) -> ConnectionPoolManager:
    return runtime.pools


def get_coordinator(runtime: Runtime = Depends(get_runtime)) -> MigrationCoordinator:
    return runtime.coordinator


class OperatorPrincipal(BaseModel):
    # Authenticated operator identity used for RBAC and audit attribution.
    subject_id: str
    role: str
    key_id: str
    auth_method: str = "operator_key"


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> OperatorPrincipal:
    # Honor X-Operator-Role only when auth is disabled and the dev bypass is on.
    try:
        role = normalize_role(request.headers.get("X-Operator-Role", "operator"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return OperatorPrincipal(subject_id=f"dev-{role}", role=role, key_id="dev-bypass", auth_method="dev_bypass")


async def _audit_auth(
    db: AsyncSession,
    request: Request,
    *,
    event_type: str,
    outcome: str,
    principal: OperatorPrincipal | None = None,
    error_code: str | None = None,
    metadata: dict[str, str] | None = None,
) -> None:
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=None,
        actor_type="operator_key" if principal is not None else "anonymous",
        actor_id=principal.key_id if principal is not None else None,
        actor_role=principal.role if principal is not None else None,
        event_type=event_type,
        outcome=outcome,
        resource_type="auth",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={"path": request.url.path, "method": request.method, **(metadata or {})},
        error_code=error_code,
        commit=True,
        best_effort=True,
    )


async def _audit_auth_failure(db: AsyncSession, request: Request) -> None:
    await _audit_auth(
        db,
        request,
        event_type="auth.access.failure",
        outcome="failure",
        error_code="AUTH_UNAUTHORIZED",
    )


async def _touch_last_used(db: AsyncSession, key_id: str) -> None:
    try:
        await db.execute(update(OperatorKey).where(OperatorKey.id == key_id).values(last_used_at=func.now()))
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()


async def get_operator_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> OperatorPrincipal:
    settings = get_settings()
    if not settings.auth_enabled:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")

    try:
        token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    except HTTPException:
        await _audit_auth_failure(db, request)
        raise
    if not token:
        await _audit_auth_failure(db, request)
        raise _auth_error("Missing operator key")

    key = await find_active_key(db, token)
    if key is None:
        await _audit_auth_failure(db, request)
        raise _auth_error("Invalid or revoked operator key")
    await _touch_last_used(db, key.id)
    return OperatorPrincipal(subject_id=key.name or key.id, role=key.role, key_id=key.id)


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        principal: OperatorPrincipal = Depends(get_operator_principal),
        db: AsyncSession = Depends(get_db),
    ) -> OperatorPrincipal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            await _audit_auth(
                db,
                request,
                event_type="rbac.forbidden",
                outcome="failure",
                principal=principal,
                error_code="AUTH_FORBIDDEN",
                metadata={"required_role": minimum_role},
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def request_intent(request: Request) -> str:
    return INTENT_WRITE if request.method.upper() in _WRITE_METHODS else INTENT_READ


async def tenant_connection(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> AsyncIterator[ScopedConnection]:
    """Resolve the caller's tenant and hold one scoped connection for the request.

    The connection is released when the request finishes, fails or the
    client disconnects.
    """
    intent = request_intent(request)
    ctx = request_context_from_request(request, runtime.settings)
    target = await runtime.router.resolve_connection(ctx, intent=intent)
    async with runtime.pools.acquire(target, intent=intent) as conn:
        yield conn
