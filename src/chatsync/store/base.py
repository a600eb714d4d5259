"""Session-scoped CRUD over one entity table.

Records handed to an :class:`EntityStore` are already sanitized: keys are
wire field names, values are storage-ready primitives.  The store maps
fields onto columns, encodes JSONB values and owns every SQL statement that
touches the table.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

import asyncpg

from chatsync.models import ColumnType, TableSpec

if TYPE_CHECKING:
    from chatsync.core.metrics import SyncMetrics
    from chatsync.db import Database

logger = logging.getLogger(__name__)

Identity = str | tuple[str, ...]
Record = dict[str, Any]


@dataclass(frozen=True)
class BulkWriteResult:
    """Rows inserted and rows updated by one bulk upsert."""

    created: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated

    def __add__(self, other: BulkWriteResult) -> BulkWriteResult:
        return BulkWriteResult(self.created + other.created, self.updated + other.updated)


def affected_rows(status: str) -> int:
    """Row count from an asyncpg command status such as ``"DELETE 3"``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class EntityStore:
    """Typed upsert/update/delete for one entity kind within one session.

    Every public method takes an optional ``conn``: when given, the statement
    joins that connection's open transaction; otherwise the method opens its
    own transaction bounded by the default timeout.
    """

    spec: ClassVar[TableSpec]

    def __init__(
        self,
        database: Database,
        session_id: str,
        *,
        metrics: SyncMetrics | None = None,
        timeout_s: float | None = None,
        bulk_timeout_s: float | None = None,
    ) -> None:
        self._db = database
        self.session_id = session_id
        self._metrics = metrics
        self._timeout_s = timeout_s
        self._bulk_timeout_s = bulk_timeout_s

    # -- helpers -------------------------------------------------------------

    @property
    def table(self) -> str:
        return self.spec.table

    @property
    def entity(self) -> str:
        return self.spec.kind.value

    def identity_of(self, record: Mapping[str, Any]) -> tuple[str, ...] | None:
        """Return the identity tuple of *record*, or None when a part is missing."""
        parts = tuple(record.get(name) for name in self.spec.identity)
        if any(not isinstance(part, str) or not part for part in parts):
            return None
        return parts  # type: ignore[return-value]

    def _key(self, identity: Identity) -> tuple[str, ...]:
        key = (identity,) if isinstance(identity, str) else tuple(identity)
        if len(key) != len(self.spec.identity):
            raise ValueError(
                f"{self.table} identity needs {len(self.spec.identity)} part(s), got {identity!r}"
            )
        return key

    def _encode(self, field_name: str, value: Any) -> Any:
        column = self.spec.column_for(field_name)
        if column is not None and column.type is ColumnType.JSONB and value is not None:
            return json.dumps(value)
        return value

    def _decode_row(self, row: Mapping[str, Any]) -> Record:
        record: Record = {}
        for column_name, value in row.items():
            column = self.spec.field_for_column(column_name)
            if column is None or value is None:
                continue
            if column.type is ColumnType.JSONB and isinstance(value, str):
                value = json.loads(value)
            elif column.type is ColumnType.BYTEA and isinstance(value, memoryview):
                value = bytes(value)
            record[column.field] = value
        return record

    def _storable(self, record: Mapping[str, Any]) -> Record:
        return {k: v for k, v in record.items() if self.spec.column_for(k) is not None}

    def _identity_clause(self, start: int) -> str:
        return " AND ".join(
            f"{column} = ${start + i}" for i, column in enumerate(self.spec.identity_columns)
        )

    def _record_written(self, op: str, count: int = 1) -> None:
        if self._metrics is not None:
            self._metrics.record_written(
                session=self.session_id, entity=self.entity, op=op, count=count
            )

    @asynccontextmanager
    async def _connection(
        self,
        conn: asyncpg.Connection | None,
        *,
        operation: str,
        bulk: bool = False,
        timeout: float | None = None,
    ) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
            return
        budget = timeout if timeout is not None else (
            self._bulk_timeout_s if bulk else self._timeout_s
        )
        async with self._db.transaction(
            timeout=budget, operation=f"{self.table}.{operation}"
        ) as tx:
            yield tx

    def _upsert_sql(
        self, fields: Sequence[str], increments: frozenset[str] = frozenset()
    ) -> str:
        columns = ["session_id", *(self.spec.column_for(f).column for f in fields)]
        placeholders = [f"${i}" for i in range(1, len(columns) + 1)]
        identity_cols = self.spec.identity_columns
        assignments = []
        for field_name in fields:
            column = self.spec.column_for(field_name).column
            if column in identity_cols:
                continue
            if field_name in increments:
                assignments.append(
                    f"{column} = COALESCE({self.table}.{column}, 0) + EXCLUDED.{column}"
                )
            else:
                assignments.append(f"{column} = EXCLUDED.{column}")
        if not assignments:
            # keep DO UPDATE so RETURNING yields a row for existing records
            assignments.append(f"{identity_cols[0]} = EXCLUDED.{identity_cols[0]}")
        conflict = ", ".join(("session_id", *identity_cols))
        return (
            f"INSERT INTO {self.table} ({', '.join(columns)}) "
            f"VALUES ({', '.join(placeholders)}) "
            f"ON CONFLICT ({conflict}) DO UPDATE SET {', '.join(assignments)} "
            "RETURNING (xmax = 0) AS inserted"
        )

    # -- reads ---------------------------------------------------------------

    async def get(
        self, identity: Identity, *, conn: asyncpg.Connection | None = None
    ) -> Record | None:
        """Return the stored record for *identity*, or None."""
        key = self._key(identity)
        sql = f"SELECT * FROM {self.table} WHERE session_id = $1 AND {self._identity_clause(2)}"
        async with self._connection(conn, operation="get") as c:
            row = await c.fetchrow(sql, self.session_id, *key)
        return self._decode_row(row) if row is not None else None

    async def exists(self, identity: Identity, *, conn: asyncpg.Connection | None = None) -> bool:
        key = self._key(identity)
        sql = (
            f"SELECT EXISTS (SELECT 1 FROM {self.table} "
            f"WHERE session_id = $1 AND {self._identity_clause(2)})"
        )
        async with self._connection(conn, operation="exists") as c:
            return bool(await c.fetchval(sql, self.session_id, *key))

    async def existing_identities(
        self, identities: Iterable[Identity], *, conn: asyncpg.Connection | None = None
    ) -> set[tuple[str, ...]]:
        """Return the subset of *identities* that already have a row."""
        keys = [self._key(identity) for identity in identities]
        if not keys:
            return set()
        columns = self.spec.identity_columns
        arrays = [list(parts) for parts in zip(*keys, strict=True)]
        unnest_args = ", ".join(f"${i}::text[]" for i in range(2, len(columns) + 2))
        sql = (
            f"SELECT {', '.join(columns)} FROM {self.table} "
            f"WHERE session_id = $1 AND ({', '.join(columns)}) IN "
            f"(SELECT * FROM unnest({unnest_args}))"
        )
        async with self._connection(conn, operation="existing") as c:
            rows = await c.fetch(sql, self.session_id, *arrays)
        return {tuple(row[column] for column in columns) for row in rows}

    # -- writes --------------------------------------------------------------

    async def upsert(
        self,
        record: Mapping[str, Any],
        *,
        increments: frozenset[str] = frozenset(),
        conn: asyncpg.Connection | None = None,
    ) -> bool:
        """Create or overwrite the supplied columns of *record*.

        Fields named in *increments* are added to the stored value instead of
        replacing it.  Returns True when a new row was created.

        A unique violation raised by a concurrent writer is retried once as a
        strict update; if that update finds no row the violation propagates.
        """
        values = self._storable(record)
        key = self.identity_of(values)
        if key is None:
            raise ValueError(
                f"{self.entity} record is missing identity fields {self.spec.identity}"
            )
        fields = list(values)
        sql = self._upsert_sql(fields, increments)
        args = [self.session_id, *(self._encode(f, values[f]) for f in fields)]
        try:
            async with self._connection(conn, operation="upsert") as c:
                # savepoint, so a caller's transaction survives the violation
                async with c.transaction():
                    created = bool(await c.fetchval(sql, *args))
        except asyncpg.UniqueViolationError:
            logger.info(
                "Concurrent insert of %s %s, retrying as update",
                self.entity,
                "/".join(key),
                extra={"entity": self.entity},
            )
            if not await self.update(key, values, strict=True, increments=increments, conn=conn):
                raise
            return False
        self._record_written("create" if created else "update")
        return created

    async def update(
        self,
        identity: Identity,
        patch: Mapping[str, Any],
        *,
        strict: bool = False,
        increments: frozenset[str] = frozenset(),
        conn: asyncpg.Connection | None = None,
    ) -> bool:
        """Apply *patch* to an existing row.

        When no row matches, a non-strict update creates the record (identity
        taken from *identity*); a strict update returns False.
        """
        key = self._key(identity)
        values = {
            f: v for f, v in self._storable(patch).items() if f not in self.spec.identity
        }
        if values:
            assignments = []
            for i, field_name in enumerate(values, start=len(key) + 2):
                column = self.spec.column_for(field_name).column
                if field_name in increments:
                    assignments.append(f"{column} = COALESCE({column}, 0) + ${i}")
                else:
                    assignments.append(f"{column} = ${i}")
            sql = (
                f"UPDATE {self.table} SET {', '.join(assignments)} "
                f"WHERE session_id = $1 AND {self._identity_clause(2)} RETURNING 1"
            )
            args = [self.session_id, *key, *(self._encode(f, v) for f, v in values.items())]
            async with self._connection(conn, operation="update") as c:
                updated = await c.fetchval(sql, *args)
            if updated:
                self._record_written("update")
                return True
        elif await self.exists(key, conn=conn):
            return True

        if strict:
            return False
        record = dict(zip(self.spec.identity, key, strict=True))
        record.update(values)
        await self.upsert(record, increments=increments, conn=conn)
        return True

    async def bulk_upsert(
        self,
        records: Sequence[Mapping[str, Any]],
        *,
        timeout: float | None = None,
        conn: asyncpg.Connection | None = None,
    ) -> BulkWriteResult:
        """Write *records* in one transaction.

        Existing identities are read first; new records go through a single
        ``executemany`` insert and existing ones are updated one by one.
        Records without identity are skipped.  Duplicates within *records*
        are folded together, later fields overlaying earlier ones.
        """
        merged: dict[tuple[str, ...], Record] = {}
        skipped = 0
        for record in records:
            values = self._storable(record)
            key = self.identity_of(values)
            if key is None:
                skipped += 1
                continue
            merged.setdefault(key, {}).update(values)
        if skipped:
            logger.warning(
                "Skipped %d %s record(s) without identity in bulk write",
                skipped,
                self.entity,
                extra={"entity": self.entity},
            )
        if not merged:
            return BulkWriteResult()

        async with self._connection(conn, operation="bulk_upsert", bulk=True, timeout=timeout) as c:
            existing = await self.existing_identities(merged, conn=c)
            new = [record for key, record in merged.items() if key not in existing]
            if new:
                fields = sorted({f for record in new for f in record})
                columns = ["session_id", *(self.spec.column_for(f).column for f in fields)]
                placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
                conflict = ", ".join(("session_id", *self.spec.identity_columns))
                sql = (
                    f"INSERT INTO {self.table} ({', '.join(columns)}) VALUES ({placeholders}) "
                    f"ON CONFLICT ({conflict}) DO NOTHING"
                )
                await c.executemany(
                    sql,
                    [
                        [self.session_id, *(self._encode(f, record.get(f)) for f in fields)]
                        for record in new
                    ],
                )
            for key in existing:
                await self.update(key, merged[key], strict=True, conn=c)

        result = BulkWriteResult(created=len(new), updated=len(existing))
        self._record_written("create", result.created)
        self._record_written("update", result.updated)
        return result

    async def delete(
        self, identities: Iterable[Identity], *, conn: asyncpg.Connection | None = None
    ) -> int:
        """Delete the rows for *identities* in this session; returns the count."""
        keys = [self._key(identity) for identity in identities]
        if not keys:
            return 0
        columns = self.spec.identity_columns
        arrays = [list(parts) for parts in zip(*keys, strict=True)]
        unnest_args = ", ".join(f"${i}::text[]" for i in range(2, len(columns) + 2))
        sql = (
            f"DELETE FROM {self.table} WHERE session_id = $1 AND ({', '.join(columns)}) IN "
            f"(SELECT * FROM unnest({unnest_args}))"
        )
        async with self._connection(conn, operation="delete") as c:
            status = await c.execute(sql, self.session_id, *arrays)
        return affected_rows(status)

    async def delete_all(self, *, conn: asyncpg.Connection | None = None) -> int:
        """Delete every row of this session."""
        async with self._connection(conn, operation="delete_all") as c:
            status = await c.execute(
                f"DELETE FROM {self.table} WHERE session_id = $1", self.session_id
            )
        return affected_rows(status)
