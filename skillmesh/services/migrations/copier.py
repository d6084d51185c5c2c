from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import logging
from typing import Any, Iterable, Protocol

from sqlalchemy import MetaData, Table, and_, func, or_, select, text
from sqlalchemy.engine import Row

from skillmesh.core.config import Settings, get_settings
from skillmesh.domain.tenancy import INTENT_READ, INTENT_WRITE, ConnectionTarget
from skillmesh.services.pools import ConnectionPoolManager, ScopedConnection


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableReport:
    table: str
    source_rows: int
    target_rows: int
    source_checksum: str
    target_checksum: str

    @property
    def matches(self) -> bool:
        return self.source_rows == self.target_rows and self.source_checksum == self.target_checksum

    def as_json(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "source_rows": self.source_rows,
            "target_rows": self.target_rows,
            "source_checksum": self.source_checksum,
            "target_checksum": self.target_checksum,
            "matches": self.matches,
        }


@dataclass(frozen=True)
class VerificationReport:
    tables: tuple[TableReport, ...]

    @property
    def ok(self) -> bool:
        return all(item.matches for item in self.tables)

    def mismatches(self) -> list[str]:
        return [item.table for item in self.tables if not item.matches]

    def as_json(self) -> dict[str, Any]:
        return {"ok": self.ok, "tables": [item.as_json() for item in self.tables]}


class TenantDataCopier(Protocol):
    async def copy(self, source: ConnectionTarget, target: ConnectionTarget) -> dict[str, int]: ...

    async def verify(self, source: ConnectionTarget, target: ConnectionTarget) -> VerificationReport: ...

    async def copy_delta(self, source: ConnectionTarget, target: ConnectionTarget) -> dict[str, int]: ...

    async def purge(self, source: ConnectionTarget) -> dict[str, int]: ...


def _json_default(value: Any) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)


def row_digest(row: Row[Any]) -> str:
    payload = json.dumps(dict(row._mapping), sort_keys=True, default=_json_default, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _key_columns(table: Table) -> list[Any]:
    # Tables without a primary key are keyed and ordered on every column.
    return list(table.primary_key.columns) or list(table.columns)


def _row_key(table: Table, row: Row[Any]) -> tuple[Any, ...]:
    mapping = row._mapping
    return tuple(mapping[column.name] for column in _key_columns(table))


def _key_clause(table: Table, keys: list[tuple[Any, ...]]) -> Any:
    columns = _key_columns(table)
    if len(columns) == 1:
        return columns[0].in_([key[0] for key in keys])
    # Composite keys expand to OR-ed equality groups; tuple IN is not portable to SQLite.
    return or_(*[and_(*[column == value for column, value in zip(columns, key)]) for key in keys])


class SqlTenantDataCopier:
    """Move one tenant's rows between connection targets.

    Table definitions are reflected from the source on every call. Shared
    sources and destinations are always read and written through the tenant
    predicate, so other tenants' rows in a shared database are never touched.
    """

    def __init__(
        self,
        pools: ConnectionPoolManager,
        *,
        tables: Iterable[str] | None = None,
        batch_size: int | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._pools = pools
        self._tables = list(tables if tables is not None else self._settings.migration_tables)
        self._batch_size = max(1, int(batch_size or self._settings.migration_copy_batch_size))

    async def _reflect(self, conn: ScopedConnection) -> list[Table]:
        wanted = set(self._tables)
        schema = conn.target.schema_name
        reflected = MetaData()
        await conn.connection.run_sync(reflected.reflect, schema=schema, only=lambda name, _meta: name in wanted)
        if schema is None:
            return [table for table in reflected.sorted_tables if table.name in wanted]
        # Reflection ignores schema_translate_map; unqualified copies follow each connection's map instead.
        metadata = MetaData()
        for table in reflected.sorted_tables:
            if table.name in wanted:
                table.to_metadata(metadata, schema=None)
        return [table for table in metadata.sorted_tables if table.name in wanted]

    async def _prepare_destination(self, conn: ScopedConnection, tables: list[Table]) -> None:
        if not tables:
            return
        if conn.target.schema_name is not None and conn.connection.dialect.name == "postgresql":
            await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{conn.target.schema_name}"'))
        metadata = tables[0].metadata
        await conn.connection.run_sync(metadata.create_all, tables=tables, checkfirst=True)

    async def copy(self, source: ConnectionTarget, target: ConnectionTarget) -> dict[str, int]:
        copied: dict[str, int] = {}
        async with self._pools.acquire(source, intent=INTENT_READ) as src:
            tables = await self._reflect(src)
            async with self._pools.acquire(target, intent=INTENT_WRITE) as dst:
                await self._prepare_destination(dst, tables)
                # Restarted jobs begin from an empty destination.
                for table in reversed(tables):
                    await dst.delete(table)
                for table in tables:
                    copied[table.name] = await self._copy_table(src, dst, table)
                await dst.commit()
        logger.info(
            "tenant_data_copied tenant_id=%s source=%s target=%s rows=%s",
            source.tenant_id,
            source.pool_key,
            target.pool_key,
            sum(copied.values()),
        )
        return copied

    async def _copy_table(self, src: ScopedConnection, dst: ScopedConnection, table: Table) -> int:
        total = 0
        stmt = src.select_statement(table).order_by(*_key_columns(table))
        result = await src.connection.stream(stmt)
        async for partition in result.partitions(self._batch_size):
            rows = [dict(row._mapping) for row in partition]
            total += await dst.insert(table, rows)
        return total

    async def _digest_table(self, conn: ScopedConnection, table: Table) -> tuple[int, str, dict[tuple[Any, ...], str]]:
        hasher = hashlib.sha256()
        digests: dict[tuple[Any, ...], str] = {}
        count = 0
        stmt = conn.select_statement(table).order_by(*_key_columns(table))
        result = await conn.connection.stream(stmt)
        async for partition in result.partitions(self._batch_size):
            for row in partition:
                digest = row_digest(row)
                hasher.update(digest.encode("ascii"))
                digests[_row_key(table, row)] = digest
                count += 1
        return count, hasher.hexdigest(), digests

    async def verify(self, source: ConnectionTarget, target: ConnectionTarget) -> VerificationReport:
        reports: list[TableReport] = []
        async with self._pools.acquire(source, intent=INTENT_READ) as src:
            tables = await self._reflect(src)
            async with self._pools.acquire(target, intent=INTENT_READ) as dst:
                for table in tables:
                    src_count, src_checksum, _ = await self._digest_table(src, table)
                    dst_count, dst_checksum, _ = await self._digest_table(dst, table)
                    reports.append(
                        TableReport(
                            table=table.name,
                            source_rows=src_count,
                            target_rows=dst_count,
                            source_checksum=src_checksum,
                            target_checksum=dst_checksum,
                        )
                    )
        return VerificationReport(tables=tuple(reports))

    async def copy_delta(self, source: ConnectionTarget, target: ConnectionTarget) -> dict[str, int]:
        """Apply rows inserted, changed or deleted on the source since the bulk copy.

        Rows are compared by primary key and row digest; the destination ends
        up holding exactly the source's rows for every configured table.
        """
        changed: dict[str, int] = {}
        async with self._pools.acquire(source, intent=INTENT_READ) as src:
            tables = await self._reflect(src)
            async with self._pools.acquire(target, intent=INTENT_WRITE) as dst:
                for table in tables:
                    _, _, src_digests = await self._digest_table(src, table)
                    _, _, dst_digests = await self._digest_table(dst, table)
                    stale = [key for key, digest in dst_digests.items() if src_digests.get(key) != digest]
                    fresh = [key for key, digest in src_digests.items() if dst_digests.get(key) != digest]
                    for start in range(0, len(stale), self._batch_size):
                        await dst.delete(table, _key_clause(table, stale[start : start + self._batch_size]))
                    for start in range(0, len(fresh), self._batch_size):
                        batch = fresh[start : start + self._batch_size]
                        rows = await src.select(table, _key_clause(table, batch))
                        await dst.insert(table, [dict(row._mapping) for row in rows])
                    changed[table.name] = len(set(stale) | set(fresh))
                await dst.commit()
        logger.info("tenant_delta_copied tenant_id=%s rows=%s", source.tenant_id, sum(changed.values()))
        return changed

    async def purge(self, source: ConnectionTarget) -> dict[str, int]:
        purged: dict[str, int] = {}
        async with self._pools.acquire(source, intent=INTENT_WRITE) as conn:
            tables = await self._reflect(conn)
            if source.is_shared:
                for table in reversed(tables):
                    purged[table.name] = await conn.delete(table)
            elif tables:
                for table in tables:
                    result = await conn.execute(select(func.count()).select_from(table))
                    purged[table.name] = int(result.scalar_one())
                await conn.connection.run_sync(tables[0].metadata.drop_all, tables=tables, checkfirst=True)
            await conn.commit()
        logger.info(
            "tenant_source_purged tenant_id=%s pool_key=%s tables=%s",
            source.tenant_id,
            source.pool_key,
            len(purged),
        )
        return purged
