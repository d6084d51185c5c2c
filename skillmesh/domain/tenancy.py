from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import re
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from skillmesh.core.errors import ValidationError


TIER_SHARED = "shared"
TIER_SCHEMA = "schema"
TIER_DEDICATED = "dedicated"
ISOLATION_TIERS = (TIER_SHARED, TIER_SCHEMA, TIER_DEDICATED)

STATUS_ACTIVE = "active"
STATUS_SUSPENDED = "suspended"
STATUS_MIGRATING = "migrating"
STATUS_DECOMMISSIONED = "decommissioned"
TENANT_STATUSES = (STATUS_ACTIVE, STATUS_SUSPENDED, STATUS_MIGRATING, STATUS_DECOMMISSIONED)
UNAVAILABLE_STATUSES = frozenset({STATUS_SUSPENDED, STATUS_DECOMMISSIONED})

SUBSCRIPTION_TIERS = ("free", "starter", "professional", "enterprise")

HINT_SOURCE_SESSION = "session"
HINT_SOURCE_HEADER = "header"
HINT_SOURCE_SUBDOMAIN = "subdomain"

LOOKUP_ID = "id"
LOOKUP_SLUG = "slug"

INTENT_READ = "read"
INTENT_WRITE = "write"

# RFC 1035 label: usable as a subdomain and as a schema-name suffix.
SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
SCHEMA_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


class SharedDescriptor(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["shared"] = "shared"


class SchemaDescriptor(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["schema"] = "schema"
    schema_name: str

    @field_validator("schema_name")
    @classmethod
    def _check_schema_name(cls, value: str) -> str:
        if not SCHEMA_NAME_PATTERN.match(value):
            raise ValueError("schema_name must be a lowercase SQL identifier")
        return value


class DedicatedDescriptor(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["dedicated"] = "dedicated"
    dsn: str

    @field_validator("dsn")
    @classmethod
    def _check_dsn(cls, value: str) -> str:
        try:
            make_url(value)
        except ArgumentError as exc:
            raise ValueError("dsn is not a valid database URL") from exc
        return value


ConnectionDescriptor = Annotated[
    Union[SharedDescriptor, SchemaDescriptor, DedicatedDescriptor],
    Field(discriminator="kind"),
]
_descriptor_adapter: TypeAdapter[Any] = TypeAdapter(ConnectionDescriptor)


def descriptor_from_value(value: Any) -> SharedDescriptor | SchemaDescriptor | DedicatedDescriptor:
    """Parse a descriptor from a mapping, a model, or the ``kind:value`` shorthand.

    Shorthand forms are ``shared``, ``schema:<schema_name>`` and
    ``dedicated:<dsn>``. Unknown keys are rejected rather than ignored.
    """
    if isinstance(value, (SharedDescriptor, SchemaDescriptor, DedicatedDescriptor)):
        return value
    if isinstance(value, str):
        value = _shorthand_to_mapping(value)
    try:
        return _descriptor_adapter.validate_python(value)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid connection descriptor: {exc.errors()[0]['msg']}") from exc


def _shorthand_to_mapping(value: str) -> dict[str, str]:
    kind, _, rest = value.strip().partition(":")
    if kind == TIER_SHARED and not rest:
        return {"kind": TIER_SHARED}
    if kind == TIER_SCHEMA and rest:
        return {"kind": TIER_SCHEMA, "schema_name": rest}
    if kind == TIER_DEDICATED and rest:
        return {"kind": TIER_DEDICATED, "dsn": rest}
    raise ValidationError(f"Unrecognized connection descriptor: {value!r}")


def descriptor_to_json(descriptor: SharedDescriptor | SchemaDescriptor | DedicatedDescriptor) -> dict[str, Any]:
    return descriptor.model_dump()


def redact_dsn(dsn: str) -> str:
    # Never surface credentials in API payloads or logs.
    return make_url(dsn).render_as_string(hide_password=True)


def dedicated_pool_key(dsn: str) -> str:
    # Key dedicated pools on a digest so credentials never appear in pool names.
    digest = hashlib.sha256(dsn.encode("utf-8")).hexdigest()[:16]
    return f"{TIER_DEDICATED}:{digest}"


def placement_key(descriptor: SharedDescriptor | SchemaDescriptor | DedicatedDescriptor) -> str | None:
    """Identify the physical placement a descriptor claims exclusively.

    Shared placements are common to all shared-tier tenants and return None;
    a schema or a dedicated database may belong to one tenant only.
    """
    if isinstance(descriptor, SchemaDescriptor):
        return f"{TIER_SCHEMA}:{descriptor.schema_name}"
    if isinstance(descriptor, DedicatedDescriptor):
        return dedicated_pool_key(descriptor.dsn)
    return None


def default_schema_name(slug: str, prefix: str) -> str:
    return f"{prefix}{slug.replace('-', '_')}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round trip; treat naive values as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class TenantUpsert:
    # Administrative input for creating or replacing a tenant record.
    id: str
    name: str
    slug: str
    isolation_tier: str
    connection: Any = None
    subscription_tier: str = "starter"
    status: str = STATUS_ACTIVE
    max_users: int | None = None
    max_storage_gb: int | None = None
    compliance_flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class TenantRecord:
    # Immutable registry snapshot handed to routing and migration code.
    id: str
    name: str
    slug: str
    isolation_tier: str
    connection: SharedDescriptor | SchemaDescriptor | DedicatedDescriptor
    subscription_tier: str
    status: str
    version: int
    pending_connection: SharedDescriptor | SchemaDescriptor | DedicatedDescriptor | None = None
    previous_connection: SharedDescriptor | SchemaDescriptor | DedicatedDescriptor | None = None
    max_users: int | None = None
    max_storage_gb: int | None = None
    compliance_flags: tuple[str, ...] = ()
    active_migration_id: str | None = None
    write_freeze_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def write_frozen(self, now: datetime | None = None) -> bool:
        if self.write_freeze_until is None:
            return False
        return self.write_freeze_until > (now or utc_now())


@dataclass(frozen=True)
class ConnectionTarget:
    """Resolved descriptor needed to reach one tenant's data.

    ``pool_key`` identifies the physical connection target; several
    shared-tier or schema-tier tenants resolve to the same key and therefore
    share one pool. ``row_filter_tenant_id`` is set only for shared-tier
    targets and must be bound on every connection handed out for them.
    """

    tenant_id: str
    tier: str
    pool_key: str
    dsn: str
    schema_name: str | None = None
    row_filter_tenant_id: str | None = None
    write_freeze_until: datetime | None = None

    @property
    def is_shared(self) -> bool:
        return self.tier == TIER_SHARED

    def redacted(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "tier": self.tier,
            "pool_key": self.pool_key,
            "dsn": redact_dsn(self.dsn),
            "schema_name": self.schema_name,
            "row_filter_tenant_id": self.row_filter_tenant_id,
        }


@dataclass(frozen=True)
class RequestContext:
    # Inputs the router consumes from upstream request handling.
    host: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    session_claims: Mapping[str, Any] | None = None

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass(frozen=True)
class TenantHint:
    source: str
    value: str
    lookup: str

    @property
    def cache_key(self) -> str:
        return f"{self.lookup}:{self.value}"
