from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Awaitable, Callable

from skillmesh.domain.tenancy import ConnectionTarget, TenantRecord
from skillmesh.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutingEntry:
    record: TenantRecord
    target: ConnectionTarget


@dataclass
class _Slot:
    entry: RoutingEntry
    expires_at: float


class RoutingCache:
    """TTL-bounded map from tenant hint keys to resolved routing entries.

    Concurrent misses for one key share a single loader task. Every
    invalidation advances a generation counter and records it against the
    tenant. A load that started before its tenant's latest invalidation still
    answers callers issued before that invalidation but is never stored;
    callers issued after it reload. Loads for other tenants are unaffected.
    """

    def __init__(
        self,
        *,
        ttl_s: float,
        max_entries: int = 10000,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._ttl_s = max(0.0, float(ttl_s))
        self._max_entries = max(1, int(max_entries))
        self._time = time_source or time.monotonic
        self._slots: dict[str, _Slot] = {}
        self._keys_by_tenant: dict[str, set[str]] = {}
        self._inflight: dict[str, tuple[asyncio.Task[RoutingEntry], int]] = {}
        self._generation = 0
        self._invalidated_at: dict[str, int] = {}
        self._cleared_at = 0

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def generation(self) -> int:
        return self._generation

    def get(self, key: str) -> RoutingEntry | None:
        slot = self._slots.get(key)
        if slot is None:
            return None
        if slot.expires_at <= self._time():
            self._drop_key(key)
            return None
        return slot.entry

    def _last_invalidated(self, tenant_id: str) -> int:
        return max(self._cleared_at, self._invalidated_at.get(tenant_id, 0))

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[RoutingEntry]]) -> RoutingEntry:
        issued = self._generation
        while True:
            entry = self.get(key)
            if entry is not None:
                increment_counter("routing_cache_hits_total")
                return entry
            inflight = self._inflight.get(key)
            if inflight is None:
                increment_counter("routing_cache_misses_total")
                started = self._generation
                task = asyncio.ensure_future(self._load(key, loader, started))
                task.add_done_callback(_consume_result)
                self._inflight[key] = (task, started)
            else:
                increment_counter("routing_cache_coalesced_total")
                task, started = inflight
            # Shield so one cancelled caller never cancels a load other callers are waiting on.
            entry = await asyncio.shield(task)
            invalidated = self._last_invalidated(entry.record.id)
            if invalidated <= started or invalidated > issued:
                return entry
            # The shared load predates an invalidation this caller must observe.

    async def _load(
        self,
        key: str,
        loader: Callable[[], Awaitable[RoutingEntry]],
        started: int,
    ) -> RoutingEntry:
        try:
            entry = await loader()
        finally:
            inflight = self._inflight.get(key)
            if inflight is not None and inflight[0] is asyncio.current_task():
                self._inflight.pop(key, None)
        if self._last_invalidated(entry.record.id) <= started:
            self._store(key, entry)
        return entry

    def _store(self, key: str, entry: RoutingEntry) -> None:
        if self._ttl_s <= 0:
            return
        if key not in self._slots and len(self._slots) >= self._max_entries:
            self._evict()
        self._drop_key(key)
        self._slots[key] = _Slot(entry=entry, expires_at=self._time() + self._ttl_s)
        self._keys_by_tenant.setdefault(entry.record.id, set()).add(key)
        set_gauge("routing_cache_entries", float(len(self._slots)))

    def _evict(self) -> None:
        now = self._time()
        for key in [k for k, slot in self._slots.items() if slot.expires_at <= now]:
            self._drop_key(key)
        while len(self._slots) >= self._max_entries:
            oldest = next(iter(self._slots))
            self._drop_key(oldest)

    def _drop_key(self, key: str) -> None:
        slot = self._slots.pop(key, None)
        if slot is None:
            return
        keys = self._keys_by_tenant.get(slot.entry.record.id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                self._keys_by_tenant.pop(slot.entry.record.id, None)

    def invalidate(self, tenant_id: str) -> int:
        # No awaits: the invalidation is complete when this returns.
        self._generation += 1
        self._invalidated_at[tenant_id] = self._generation
        keys = self._keys_by_tenant.pop(tenant_id, set())
        for key in keys:
            self._slots.pop(key, None)
        increment_counter("routing_cache_invalidations_total")
        set_gauge("routing_cache_entries", float(len(self._slots)))
        logger.debug("routing_cache_invalidated tenant_id=%s entries=%s", tenant_id, len(keys))
        return len(keys)

    def clear(self) -> None:
        self._generation += 1
        self._cleared_at = self._generation
        self._invalidated_at.clear()
        self._slots.clear()
        self._keys_by_tenant.clear()


def _consume_result(task: asyncio.Task[RoutingEntry]) -> None:
    # Mark loader failures as retrieved when every waiter has gone away.
    if not task.cancelled():
        task.exception()
