"""Unit tests for the table mapping and schema bootstrap."""

from __future__ import annotations

import pytest

from chatsync.models import (
    CHAT_TABLE,
    MESSAGE_TABLE,
    ColumnType,
    EntityKind,
    _camel_to_snake,
    table_for,
)
from chatsync.schema import ensure_schema, schema_ddl, table_ddl

pytestmark = pytest.mark.unit


class _RecordingPool:
    def __init__(self) -> None:
        self.statements: list[str] = []

    async def execute(self, statement: str) -> str:
        self.statements.append(statement)
        return "CREATE TABLE"


class TestModels:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("remoteJid", "remote_jid"),
            ("unreadCount", "unread_count"),
            ("pHash", "p_hash"),
            ("id", "id"),
            ("messageC2STimestamp", "message_c2_s_timestamp"),
        ],
    )
    def test_camel_to_snake(self, name, expected):
        assert _camel_to_snake(name) == expected

    def test_message_identity_is_chat_and_id(self):
        assert MESSAGE_TABLE.identity == ("remoteJid", "id")
        assert MESSAGE_TABLE.identity_columns == ("remote_jid", "id")

    def test_lookup_by_field_and_column(self):
        column = CHAT_TABLE.column_for("unreadCount")

        assert column is not None
        assert column.type is ColumnType.INTEGER
        assert CHAT_TABLE.field_for_column("unread_count") == column
        assert CHAT_TABLE.column_for("foo") is None

    def test_table_for(self):
        assert table_for("chat") is CHAT_TABLE
        assert table_for(EntityKind.MESSAGE) is MESSAGE_TABLE
        with pytest.raises(ValueError):
            table_for("group")


class TestDDL:
    def test_every_table_is_session_scoped(self):
        create, index = table_ddl(MESSAGE_TABLE)

        assert create.startswith("CREATE TABLE IF NOT EXISTS messages")
        assert "session_id TEXT NOT NULL" in create
        assert "remote_jid TEXT NOT NULL" in create
        assert "CONSTRAINT uq_messages_identity UNIQUE (session_id, remote_jid, id)" in create
        assert index == (
            "CREATE INDEX IF NOT EXISTS ix_messages_session_id ON messages (session_id)"
        )

    def test_column_types(self):
        create, _ = table_ddl(CHAT_TABLE)

        assert "unread_count INTEGER" in create
        assert "conversation_timestamp BIGINT" in create
        assert "messages JSONB" in create
        assert "tc_token BYTEA" in create

    def test_schema_covers_all_tables(self):
        statements = schema_ddl()

        for table in ("sessions", "chats", "contacts", "messages"):
            assert any(f"CREATE TABLE IF NOT EXISTS {table} " in s for s in statements)
        assert len(statements) == 8

    async def test_ensure_schema_executes_every_statement(self):
        pool = _RecordingPool()

        await ensure_schema(pool)

        assert pool.statements == schema_ddl()
