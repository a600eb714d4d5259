"""Shared in-memory doubles for handler and router tests.

The Postgres testcontainer fixtures live in the root ``conftest.py`` so that
integration tests can use them from any test tree.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

import pytest

from chatsync.config import RetryConfig, SyncConfig
from chatsync.context import SyncContext
from chatsync.events import EventBus
from chatsync.router import EventRouter
from chatsync.store import StoreSet
from chatsync.store.base import BulkWriteResult
from chatsync.store.chats import UNREAD_COUNT, is_unread_increment
from chatsync.store.sessions import SessionStore


class InMemoryEntityStore:
    """Dict-backed stand-in for :class:`chatsync.store.base.EntityStore`."""

    identity: tuple[str, ...] = ("id",)

    def __init__(self) -> None:
        self.rows: dict[tuple[str, ...], dict[str, Any]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail_upsert: Callable[[Mapping[str, Any]], BaseException | None] | None = None
        self.fail_bulk: Callable[[Sequence[Mapping[str, Any]]], BaseException | None] | None = None

    def _key(self, identity: Any) -> tuple[str, ...]:
        return (identity,) if isinstance(identity, str) else tuple(identity)

    def _record_key(self, record: Mapping[str, Any]) -> tuple[str, ...]:
        return tuple(record[name] for name in self.identity)

    def _write(self, record: Mapping[str, Any], increments: frozenset[str]) -> bool:
        key = self._record_key(record)
        row = self.rows.get(key)
        if row is None:
            self.rows[key] = copy.deepcopy(dict(record))
            return True
        for name, value in record.items():
            if name in increments:
                row[name] = (row.get(name) or 0) + value
            else:
                row[name] = copy.deepcopy(value)
        return False

    async def upsert(
        self, record: Mapping[str, Any], *, increments: frozenset[str] = frozenset()
    ) -> bool:
        self.calls.append(("upsert", dict(record)))
        if self.fail_upsert is not None:
            error = self.fail_upsert(record)
            if error is not None:
                raise error
        return self._write(record, increments)

    async def bulk_upsert(
        self, records: Sequence[Mapping[str, Any]], *, timeout: float | None = None
    ) -> BulkWriteResult:
        self.calls.append(("bulk_upsert", [dict(r) for r in records]))
        if self.fail_bulk is not None:
            error = self.fail_bulk(records)
            if error is not None:
                raise error
        created = sum(1 for record in records if self._write(record, frozenset()))
        return BulkWriteResult(created=created, updated=len(records) - created)

    async def exists(self, identity: Any) -> bool:
        return self._key(identity) in self.rows

    async def get(self, identity: Any) -> dict[str, Any] | None:
        row = self.rows.get(self._key(identity))
        return copy.deepcopy(row) if row is not None else None

    async def delete(self, identities: Iterable[Any]) -> int:
        removed = 0
        for identity in identities:
            if self.rows.pop(self._key(identity), None) is not None:
                removed += 1
        return removed

    async def delete_all(self) -> int:
        removed = len(self.rows)
        self.rows.clear()
        return removed


class InMemoryChatStore(InMemoryEntityStore):
    async def apply_update(self, patch: Mapping[str, Any]) -> bool:
        increments = frozenset({UNREAD_COUNT}) if is_unread_increment(patch) else frozenset()
        return await self.upsert(patch, increments=increments)

    async def sync_history(
        self,
        records: Sequence[Mapping[str, Any]],
        *,
        wipe: bool = False,
        chunk_size: int = 100,
        timeout: float | None = None,
    ) -> BulkWriteResult:
        self.calls.append(("sync_history", {"count": len(records), "wipe": wipe}))
        if wipe:
            self.rows.clear()
        result = BulkWriteResult()
        for start in range(0, len(records), chunk_size):
            result += await self.bulk_upsert(records[start : start + chunk_size])
        return result


class InMemoryContactStore(InMemoryEntityStore):
    async def delete_except(self, keep_ids: Iterable[str]) -> int:
        keep = {(item,) for item in keep_ids}
        stale = [key for key in self.rows if key not in keep]
        for key in stale:
            del self.rows[key]
        return len(stale)


class InMemoryMessageStore(InMemoryEntityStore):
    identity = ("remoteJid", "id")

    async def merge_update(
        self, identity: Any, patch: Mapping[str, Any], *, timeout: float | None = None
    ) -> bool:
        row = self.rows.get(self._key(identity))
        if row is None:
            return False
        row.update(copy.deepcopy({k: v for k, v in patch.items() if k not in self.identity}))
        return True

    async def merge_collection(
        self,
        identity: Any,
        field_name: str,
        merge: Callable[[list[dict[str, Any]]], list[dict[str, Any]]],
        *,
        timeout: float | None = None,
    ) -> bool:
        row = self.rows.get(self._key(identity))
        if row is None:
            return False
        row[field_name] = merge(copy.deepcopy(row.get(field_name) or []))
        return True


@pytest.fixture
def stores() -> StoreSet:
    return StoreSet(
        chats=InMemoryChatStore(),
        contacts=InMemoryContactStore(),
        messages=InMemoryMessageStore(),
    )


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(retry=RetryConfig(max_attempts=3, base_delay_s=0.001, jitter_s=0.0))


@pytest.fixture
def context(sync_config: SyncConfig) -> SyncContext:
    return SyncContext(database=None, config=sync_config)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def session_store() -> SessionStore:
    """A :class:`SessionStore` whose row store is an in-memory double."""
    store = SessionStore(
        None,  # type: ignore[arg-type]
        "acct-1",
        creds_factory=lambda: {"fresh": True},
        decoders={"app-state-sync-key": lambda value: ("decoded", value)},
    )
    store._rows = InMemoryEntityStore()  # type: ignore[assignment]
    return store


@pytest.fixture
def make_router(bus: EventBus, context: SyncContext, stores: StoreSet):
    """Build a listening :class:`EventRouter` over the in-memory stores."""

    def _make(**kwargs: Any) -> EventRouter:
        router = EventRouter("acct-1", bus, context, stores=stores, **kwargs)
        router.listen()
        return router

    return _make
