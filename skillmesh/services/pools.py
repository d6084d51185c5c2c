from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import logging
import time
from typing import Any, AsyncIterator, Callable, Iterable, Mapping, Protocol

from sqlalchemy import Select, Table, delete, insert, select, text
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.sql.elements import ColumnElement

from skillmesh.core.config import Settings, get_settings
from skillmesh.core.errors import PoolExhaustedError
from skillmesh.domain.tenancy import INTENT_READ, INTENT_WRITE, ConnectionTarget, redact_dsn
from skillmesh.persistence.guards import TENANT_COLUMN, TenantPredicateError, require_tenant_id, tenant_predicate
from skillmesh.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

# Keys stored on the DBAPI connection record; they survive checkout/checkin.
INFO_TENANT_KEY = "skillmesh.tenant_id"
INFO_SCHEMA_KEY = "skillmesh.schema_name"


class TenantBinder(Protocol):
    async def bind(self, conn: AsyncConnection, target: ConnectionTarget) -> None: ...

    async def clear(self, conn: AsyncConnection, target: ConnectionTarget) -> None: ...


class SessionVariableBinder:
    """Bind tenant scope to a pooled connection.

    On Postgres the shared-tier tenant is published through a session
    variable for row-level security policies and schema-tier connections get
    a ``search_path``; on every dialect the binding is recorded in the
    connection's ``info`` so callers and tests can observe it.
    """

    def __init__(self, variable: str) -> None:
        self._variable = variable

    async def bind(self, conn: AsyncConnection, target: ConnectionTarget) -> None:
        conn.info[INFO_TENANT_KEY] = target.row_filter_tenant_id
        conn.info[INFO_SCHEMA_KEY] = target.schema_name
        if conn.dialect.name != "postgresql":
            return
        if target.row_filter_tenant_id is not None:
            await conn.execute(
                text("SELECT set_config(:name, :value, false)"),
                {"name": self._variable, "value": target.row_filter_tenant_id},
            )
        if target.schema_name is not None:
            # schema_name is validated as a plain lowercase identifier.
            await conn.execute(text(f'SET search_path TO "{target.schema_name}", public'))
        # Session-level settings made inside a rolled-back transaction would revert.
        await conn.commit()

    async def clear(self, conn: AsyncConnection, target: ConnectionTarget) -> None:
        conn.info.pop(INFO_TENANT_KEY, None)
        conn.info.pop(INFO_SCHEMA_KEY, None)
        if conn.dialect.name != "postgresql":
            return
        if target.row_filter_tenant_id is not None:
            await conn.execute(
                text("SELECT set_config(:name, '', false)"),
                {"name": self._variable},
            )
        if target.schema_name is not None:
            await conn.execute(text("RESET search_path"))
        await conn.commit()


class ScopedConnection:
    """Connection handed to tenant-data callers for one acquisition.

    ``select``/``insert``/``delete`` add the tenant predicate for shared-tier
    targets; ``execute`` is the raw escape hatch and applies nothing.
    """

    def __init__(self, connection: AsyncConnection, target: ConnectionTarget, intent: str) -> None:
        self._connection = connection
        self._target = target
        self._intent = intent

    @property
    def connection(self) -> AsyncConnection:
        return self._connection

    @property
    def target(self) -> ConnectionTarget:
        return self._target

    @property
    def intent(self) -> str:
        return self._intent

    @property
    def bound_tenant_id(self) -> str | None:
        return self._connection.info.get(INFO_TENANT_KEY)

    def _criteria(self, table: Table, criteria: Iterable[ColumnElement[bool]]) -> list[ColumnElement[bool]]:
        clauses = list(criteria)
        if self._target.is_shared:
            clauses.append(tenant_predicate(table, self._target.row_filter_tenant_id))
        return clauses

    async def execute(self, statement: Any, params: Mapping[str, Any] | None = None) -> Any:
        return await self._connection.execute(statement, params)

    def select_statement(self, table: Table, *criteria: ColumnElement[bool]) -> Select[Any]:
        return select(table).where(*self._criteria(table, criteria))

    async def select(
        self,
        table: Table,
        *criteria: ColumnElement[bool],
        order_by: Iterable[Any] = (),
        limit: int | None = None,
    ) -> list[Row[Any]]:
        stmt = self.select_statement(table, *criteria)
        order = list(order_by)
        if order:
            stmt = stmt.order_by(*order)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._connection.execute(stmt)
        return list(result.all())

    async def insert(self, table: Table, rows: list[dict[str, Any]]) -> int:
        if not rows:
            return 0
        if self._target.is_shared:
            tenant_id = require_tenant_id(self._target.row_filter_tenant_id)
            if TENANT_COLUMN not in table.c:
                raise TenantPredicateError(f"Table {table.name} has no {TENANT_COLUMN} column")
            scoped = []
            for row in rows:
                if row.get(TENANT_COLUMN, tenant_id) != tenant_id:
                    raise TenantPredicateError(f"Row for tenant {row[TENANT_COLUMN]} written through {tenant_id}")
                scoped.append({**row, TENANT_COLUMN: tenant_id})
            rows = scoped
        await self._connection.execute(insert(table), rows)
        return len(rows)

    async def delete(self, table: Table, *criteria: ColumnElement[bool]) -> int:
        result = await self._connection.execute(delete(table).where(*self._criteria(table, criteria)))
        return int(result.rowcount or 0)

    async def commit(self) -> None:
        await self._connection.commit()

    async def rollback(self) -> None:
        await self._connection.rollback()


@dataclass
class PoolLease:
    # Track pool ownership to avoid double-releasing.
    semaphore: asyncio.Semaphore
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.semaphore.release()
        self.released = True


@dataclass
class TargetPool:
    pool_key: str
    tier: str
    dsn: str
    engine: AsyncEngine
    capacity: int
    semaphore: asyncio.Semaphore
    in_use: int = 0
    waiting: int = 0
    acquired_total: int = 0
    exhausted_total: int = 0
    last_used: float = field(default_factory=time.monotonic)


def default_engine_factory(dsn: str, capacity: int, settings: Settings) -> AsyncEngine:
    kwargs: dict[str, Any] = {}
    # SQLite pools ignore sizing arguments; capacity is enforced by the semaphore either way.
    if not dsn.startswith("sqlite"):
        kwargs["pool_size"] = capacity
        kwargs["max_overflow"] = 0
        kwargs["pool_timeout"] = max(1.0, settings.tenant_pool_acquire_timeout_ms / 1000.0)
        kwargs["pool_recycle"] = settings.tenant_pool_recycle_s
        kwargs["pool_pre_ping"] = True
    return create_async_engine(dsn, **kwargs)


class ConnectionPoolManager:
    """Bounded connection pools keyed by physical connection target.

    Shared-tier and schema-tier tenants reuse the pool of their common
    database; each dedicated database gets its own pool. Capacity is enforced
    with a semaphore per pool so acquisition can time out with
    ``PoolExhaustedError`` instead of queueing forever.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        binder: TenantBinder | None = None,
        engine_factory: Callable[[str, int, Settings], AsyncEngine] | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._binder = binder or SessionVariableBinder(self._settings.tenant_session_variable)
        self._engine_factory = engine_factory or default_engine_factory
        self._time = time_source or time.monotonic
        self._pools: dict[str, TargetPool] = {}
        self._lock = asyncio.Lock()
        self._leases: dict[str, dict[str, int]] = {}
        self._drain_waiters: dict[str, list[asyncio.Future[None]]] = {}
        self._closed = False

    async def _pool_for(self, target: ConnectionTarget) -> TargetPool:
        pool = self._pools.get(target.pool_key)
        if pool is not None:
            return pool
        async with self._lock:
            pool = self._pools.get(target.pool_key)
            if pool is None:
                capacity = max(1, int(self._settings.tenant_pool_size))
                pool = TargetPool(
                    pool_key=target.pool_key,
                    tier=target.tier,
                    dsn=target.dsn,
                    engine=self._engine_factory(target.dsn, capacity, self._settings),
                    capacity=capacity,
                    semaphore=asyncio.Semaphore(capacity),
                    last_used=self._time(),
                )
                self._pools[target.pool_key] = pool
                logger.info(
                    "tenant_pool_created pool_key=%s tier=%s dsn=%s capacity=%s",
                    pool.pool_key,
                    pool.tier,
                    redact_dsn(pool.dsn),
                    capacity,
                )
            return pool

    async def _acquire_slot(self, pool: TargetPool, target: ConnectionTarget) -> PoolLease:
        timeout_s = max(0.0, self._settings.tenant_pool_acquire_timeout_ms / 1000.0)
        pool.waiting += 1
        try:
            await asyncio.wait_for(pool.semaphore.acquire(), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            pool.exhausted_total += 1
            increment_counter("pool_exhausted_total")
            logger.warning(
                "tenant_pool_exhausted pool_key=%s tenant_id=%s capacity=%s",
                pool.pool_key,
                target.tenant_id,
                pool.capacity,
            )
            raise PoolExhaustedError(
                f"No connection available for {pool.pool_key} within {timeout_s:.1f}s",
                retry_after_s=1,
            ) from exc
        finally:
            pool.waiting -= 1
        pool.in_use += 1
        pool.acquired_total += 1
        set_gauge(f"pool_in_use.{pool.pool_key}", float(pool.in_use))
        return PoolLease(pool.semaphore)

    def _release_slot(self, pool: TargetPool, lease: PoolLease) -> None:
        if lease.released:
            return
        lease.release()
        pool.in_use -= 1
        pool.last_used = self._time()
        set_gauge(f"pool_in_use.{pool.pool_key}", float(pool.in_use))

    def _track(self, tenant_id: str, intent: str) -> None:
        counts = self._leases.setdefault(tenant_id, {})
        counts[intent] = counts.get(intent, 0) + 1

    def _untrack(self, tenant_id: str, intent: str) -> None:
        counts = self._leases.get(tenant_id)
        if counts is None:
            return
        counts[intent] = counts.get(intent, 1) - 1
        if counts[intent] <= 0:
            counts.pop(intent, None)
        if not counts:
            self._leases.pop(tenant_id, None)
        for waiter in self._drain_waiters.pop(tenant_id, []):
            if not waiter.done():
                waiter.set_result(None)

    def active_leases(self, tenant_id: str, intent: str | None = None) -> int:
        counts = self._leases.get(tenant_id, {})
        if intent is None:
            return sum(counts.values())
        return counts.get(intent, 0)

    async def wait_for_drain(self, tenant_id: str, *, timeout_s: float, intent: str | None = INTENT_WRITE) -> bool:
        """Wait until ``tenant_id`` holds no leases of ``intent``; False on timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout_s)
        while self.active_leases(tenant_id, intent) > 0:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            waiter: asyncio.Future[None] = loop.create_future()
            self._drain_waiters.setdefault(tenant_id, []).append(waiter)
            try:
                await asyncio.wait_for(waiter, timeout=remaining)
            except asyncio.TimeoutError:
                return False
        return True

    @asynccontextmanager
    async def acquire(self, target: ConnectionTarget, *, intent: str = INTENT_READ) -> AsyncIterator[ScopedConnection]:
        if self._closed:
            raise RuntimeError("Connection pool manager is closed")
        if target.is_shared:
            require_tenant_id(target.row_filter_tenant_id)
        pool = await self._pool_for(target)
        lease = await self._acquire_slot(pool, target)
        self._track(target.tenant_id, intent)
        try:
            async with pool.engine.connect() as raw:
                conn = raw
                if target.schema_name is not None:
                    conn = await raw.execution_options(schema_translate_map={None: target.schema_name})
                await self._binder.bind(conn, target)
                try:
                    yield ScopedConnection(conn, target, intent)
                finally:
                    await self._reset(conn, target)
        finally:
            self._untrack(target.tenant_id, intent)
            self._release_slot(pool, lease)

    async def _reset(self, conn: AsyncConnection, target: ConnectionTarget) -> None:
        # Uncommitted work is discarded and the tenant binding removed before checkin.
        try:
            if conn.in_transaction():
                await conn.rollback()
            await self._binder.clear(conn, target)
        except Exception as exc:  # noqa: BLE001 - never return a still-bound connection to the pool
            logger.warning("tenant_binding_reset_failed pool_key=%s", target.pool_key, exc_info=exc)
            await conn.invalidate(exc)

    def stats(self) -> list[dict[str, Any]]:
        now = self._time()
        return [
            {
                "pool_key": pool.pool_key,
                "tier": pool.tier,
                "dsn": redact_dsn(pool.dsn),
                "capacity": pool.capacity,
                "in_use": pool.in_use,
                "waiting": pool.waiting,
                "acquired_total": pool.acquired_total,
                "exhausted_total": pool.exhausted_total,
                "idle_s": round(max(0.0, now - pool.last_used), 3),
            }
            for pool in sorted(self._pools.values(), key=lambda item: item.pool_key)
        ]

    async def dispose(self, pool_key: str) -> bool:
        async with self._lock:
            pool = self._pools.get(pool_key)
            if pool is None:
                return False
            if pool.in_use > 0 or pool.waiting > 0:
                logger.info("tenant_pool_dispose_skipped pool_key=%s in_use=%s", pool_key, pool.in_use)
                return False
            self._pools.pop(pool_key, None)
        await pool.engine.dispose()
        logger.info("tenant_pool_disposed pool_key=%s", pool_key)
        return True

    async def dispose_idle(self) -> list[str]:
        threshold = self._settings.tenant_pool_idle_dispose_s
        now = self._time()
        idle = [
            key
            for key, pool in list(self._pools.items())
            if pool.in_use == 0 and pool.waiting == 0 and now - pool.last_used >= threshold
        ]
        disposed = []
        for key in idle:
            if await self.dispose(key):
                disposed.append(key)
        return disposed

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            await pool.engine.dispose()
