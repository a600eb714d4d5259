"""EntityStore write paths against a scripted connection."""

from __future__ import annotations

from contextlib import asynccontextmanager

import asyncpg
import pytest

from chatsync.store import ChatStore

pytestmark = pytest.mark.unit

X = "x@s.whatsapp.net"


class _ScriptedConnection:
    """Answers ``fetchval`` by statement kind and records every statement."""

    def __init__(self, *, insert, update) -> None:
        self.responses = {"INSERT": insert, "UPDATE": update}
        self.statements: list[tuple[str, tuple]] = []

    @asynccontextmanager
    async def transaction(self):
        yield

    async def fetchval(self, sql: str, *args):
        self.statements.append((sql, args))
        response = self.responses[sql.split(" ", 1)[0]]
        if isinstance(response, BaseException):
            raise response
        return response

    @property
    def kinds(self) -> list[str]:
        return [sql.split(" ", 1)[0] for sql, _ in self.statements]


def _violation() -> asyncpg.UniqueViolationError:
    return asyncpg.UniqueViolationError("duplicate key value violates unique constraint")


class TestUpsertConflict:
    async def test_unique_violation_retries_as_update(self):
        conn = _ScriptedConnection(insert=_violation(), update=1)
        chats = ChatStore(None, "acct-1")

        created = await chats.upsert({"id": X, "name": "Team"}, conn=conn)

        assert created is False
        assert conn.kinds == ["INSERT", "UPDATE"]
        update_sql, update_args = conn.statements[1]
        assert "WHERE session_id = $1" in update_sql
        assert update_args == ("acct-1", X, "Team")

    async def test_unique_violation_reraised_when_row_is_gone(self):
        conn = _ScriptedConnection(insert=_violation(), update=None)
        chats = ChatStore(None, "acct-1")

        with pytest.raises(asyncpg.UniqueViolationError):
            await chats.upsert({"id": X, "name": "Team"}, conn=conn)

        assert conn.kinds == ["INSERT", "UPDATE"]

    async def test_increment_survives_the_retry(self):
        conn = _ScriptedConnection(insert=_violation(), update=1)
        chats = ChatStore(None, "acct-1")

        await chats.upsert(
            {"id": X, "unreadCount": 3}, increments=frozenset({"unreadCount"}), conn=conn
        )

        update_sql, _ = conn.statements[1]
        assert "unread_count = COALESCE(unread_count, 0) + $3" in update_sql


class TestUpdate:
    async def test_strict_update_of_missing_row_returns_false(self):
        conn = _ScriptedConnection(insert=True, update=None)
        chats = ChatStore(None, "acct-1")

        assert await chats.update(X, {"name": "Team"}, strict=True, conn=conn) is False
        assert conn.kinds == ["UPDATE"]

    async def test_lenient_update_of_missing_row_creates_it(self):
        conn = _ScriptedConnection(insert=True, update=None)
        chats = ChatStore(None, "acct-1")

        assert await chats.update(X, {"name": "Team"}, conn=conn) is True
        assert conn.kinds == ["UPDATE", "INSERT"]
        _, insert_args = conn.statements[1]
        assert insert_args == ("acct-1", X, "Team")

    async def test_update_of_existing_row(self):
        conn = _ScriptedConnection(insert=True, update=1)
        chats = ChatStore(None, "acct-1")

        assert await chats.update(X, {"id": "ignored", "name": "Team"}, strict=True, conn=conn)
        assert conn.kinds == ["UPDATE"]
        assert conn.statements[0][1] == ("acct-1", X, "Team")
