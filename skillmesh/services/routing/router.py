from __future__ import annotations

from datetime import datetime
import logging
import math
from typing import Callable, Protocol

from skillmesh.core.config import Settings, get_settings
from skillmesh.core.errors import TenantUnavailableError
from skillmesh.domain.tenancy import (
    INTENT_READ,
    INTENT_WRITE,
    TIER_DEDICATED,
    TIER_SCHEMA,
    TIER_SHARED,
    UNAVAILABLE_STATUSES,
    ConnectionTarget,
    DedicatedDescriptor,
    RequestContext,
    SchemaDescriptor,
    SharedDescriptor,
    TenantHint,
    TenantRecord,
    dedicated_pool_key,
    utc_now,
)
from skillmesh.services.routing.cache import RoutingCache, RoutingEntry
from skillmesh.services.routing.hints import extract_tenant_hint
from skillmesh.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

POOL_KEY_SHARED = TIER_SHARED
POOL_KEY_SCHEMA = TIER_SCHEMA


class TenantResolver(Protocol):
    async def resolve(self, identifier: str, *, lookup: str = ...) -> TenantRecord: ...


def build_connection_target(record: TenantRecord, settings: Settings) -> ConnectionTarget:
    # Always derive from the active descriptor; a pending migration target is never routable.
    descriptor = record.connection
    if record.isolation_tier == TIER_SHARED:
        return ConnectionTarget(
            tenant_id=record.id,
            tier=TIER_SHARED,
            pool_key=POOL_KEY_SHARED,
            dsn=settings.shared_database_url,
            row_filter_tenant_id=record.id,
            write_freeze_until=record.write_freeze_until,
        )
    if record.isolation_tier == TIER_SCHEMA and isinstance(descriptor, SchemaDescriptor):
        return ConnectionTarget(
            tenant_id=record.id,
            tier=TIER_SCHEMA,
            pool_key=POOL_KEY_SCHEMA,
            dsn=settings.schema_database_url,
            schema_name=descriptor.schema_name,
            write_freeze_until=record.write_freeze_until,
        )
    if record.isolation_tier == TIER_DEDICATED and isinstance(descriptor, DedicatedDescriptor):
        return ConnectionTarget(
            tenant_id=record.id,
            tier=TIER_DEDICATED,
            pool_key=dedicated_pool_key(descriptor.dsn),
            dsn=descriptor.dsn,
            write_freeze_until=record.write_freeze_until,
        )
    raise ValueError(
        f"Tenant {record.id} has tier {record.isolation_tier} with a {descriptor.kind} descriptor"
    )


def build_target_for_descriptor(
    record: TenantRecord,
    descriptor: SharedDescriptor | SchemaDescriptor | DedicatedDescriptor,
    settings: Settings,
) -> ConnectionTarget:
    """Build a target for an arbitrary descriptor of ``record``.

    Used by migrations to reach the destination before it becomes the active
    descriptor; the router itself never calls this for pending descriptors.
    """
    shadow = TenantRecord(
        id=record.id,
        name=record.name,
        slug=record.slug,
        isolation_tier=descriptor.kind,
        connection=descriptor,
        subscription_tier=record.subscription_tier,
        status=record.status,
        version=record.version,
    )
    return build_connection_target(shadow, settings)


class TenantRouter:
    def __init__(
        self,
        registry: TenantResolver,
        *,
        cache: RoutingCache | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._settings = settings or get_settings()
        self._cache = cache if cache is not None else RoutingCache(
            ttl_s=self._settings.routing_cache_ttl_s,
            max_entries=self._settings.routing_cache_max_entries,
        )
        self._clock = clock or utc_now

    @property
    def cache(self) -> RoutingCache:
        return self._cache

    async def resolve_connection(self, ctx: RequestContext, *, intent: str = INTENT_READ) -> ConnectionTarget:
        hint = extract_tenant_hint(ctx, self._settings)
        return await self.resolve_hint(hint, intent=intent)

    async def resolve_hint(self, hint: TenantHint, *, intent: str = INTENT_READ) -> ConnectionTarget:
        entry = await self._cache.get_or_load(hint.cache_key, lambda: self._load(hint))
        if intent == INTENT_WRITE:
            self._enforce_write_gate(entry.record)
        return entry.target

    async def _load(self, hint: TenantHint) -> RoutingEntry:
        record = await self._registry.resolve(hint.value, lookup=hint.lookup)
        if record.status in UNAVAILABLE_STATUSES:
            increment_counter(f"tenant_unavailable_total.{record.status}")
            raise TenantUnavailableError(
                f"Tenant {record.id} is {record.status}",
                retry_after_s=self._settings.unavailable_retry_after_s,
            )
        target = build_connection_target(record, self._settings)
        logger.debug(
            "routing_entry_loaded tenant_id=%s source=%s tier=%s pool_key=%s",
            record.id,
            hint.source,
            target.tier,
            target.pool_key,
        )
        return RoutingEntry(record=record, target=target)

    def _enforce_write_gate(self, record: TenantRecord) -> None:
        # Cutover freezes writes on the source; reads keep flowing.
        now = self._clock()
        freeze_until = record.write_freeze_until
        if freeze_until is None or not record.write_frozen(now):
            return
        remaining = (freeze_until - now).total_seconds()
        retry_after = max(
            1,
            min(self._settings.migration_cutover_retry_after_s, math.ceil(remaining)),
        )
        increment_counter("write_frozen_rejections_total")
        raise TenantUnavailableError(
            f"Writes for tenant {record.id} are frozen for cutover",
            retry_after_s=retry_after,
        )
