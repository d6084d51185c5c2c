from __future__ import annotations

from sqlalchemy import Table
from sqlalchemy.sql.elements import ColumnElement

from skillmesh.core.errors import SkillmeshError


TENANT_COLUMN = "tenant_id"


class TenantPredicateError(SkillmeshError):
    """Shared-tier statement issued without a tenant predicate."""

    code = "TENANT_PREDICATE_REQUIRED"


def require_tenant_id(tenant_id: str | None) -> str:
    # Shared-tier rows are only reachable through a non-empty tenant identifier.
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")
    return tenant_id


def tenant_predicate(table: Table, tenant_id: str | None) -> ColumnElement[bool]:
    # Build shared-tier row filters through one helper so every path is guarded.
    resolved = require_tenant_id(tenant_id)
    if TENANT_COLUMN not in table.c:
        raise TenantPredicateError(f"Table {table.name} has no {TENANT_COLUMN} column")
    return table.c[TENANT_COLUMN] == resolved
