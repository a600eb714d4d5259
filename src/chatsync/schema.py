"""Idempotent table bootstrap for the four session-scoped tables.

This is not a migration system: it only creates missing tables and indexes.
Columns are derived from :mod:`chatsync.models`, so the store's SQL and the
DDL cannot drift apart.
"""

from __future__ import annotations

import logging
from typing import Any

from chatsync.models import TABLES, ColumnType, TableSpec

logger = logging.getLogger(__name__)

_SQL_TYPES: dict[ColumnType, str] = {
    ColumnType.TEXT: "TEXT",
    ColumnType.INTEGER: "INTEGER",
    ColumnType.BIGINT: "BIGINT",
    ColumnType.BOOLEAN: "BOOLEAN",
    ColumnType.JSONB: "JSONB",
    ColumnType.BYTEA: "BYTEA",
}


def table_ddl(spec: TableSpec) -> list[str]:
    """Return the CREATE statements for one table."""
    identity = set(spec.identity)
    lines = [
        "pk_id BIGSERIAL PRIMARY KEY",
        "session_id TEXT NOT NULL",
    ]
    for column in spec.columns:
        not_null = " NOT NULL" if column.field in identity else ""
        lines.append(f"{column.column} {_SQL_TYPES[column.type]}{not_null}")
    unique_cols = ", ".join(("session_id", *spec.identity_columns))
    lines.append(f"CONSTRAINT uq_{spec.table}_identity UNIQUE ({unique_cols})")
    body = ",\n    ".join(lines)
    return [
        f"CREATE TABLE IF NOT EXISTS {spec.table} (\n    {body}\n)",
        f"CREATE INDEX IF NOT EXISTS ix_{spec.table}_session_id ON {spec.table} (session_id)",
    ]


def schema_ddl() -> list[str]:
    """Return the CREATE statements for every entity table."""
    statements: list[str] = []
    for spec in TABLES.values():
        statements.extend(table_ddl(spec))
    return statements


async def ensure_schema(pool: Any) -> None:
    """Create any missing entity tables on *pool* (asyncpg pool or connection)."""
    for statement in schema_ddl():
        await pool.execute(statement)
    logger.info("Ensured chatsync schema: %s", ", ".join(spec.table for spec in TABLES.values()))
