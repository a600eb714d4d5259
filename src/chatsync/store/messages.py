"""Message rows: read-merge-write updates of JSON fields."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from typing import Any

from chatsync.models import MESSAGE_TABLE, ColumnType
from chatsync.store.base import EntityStore, Identity

CollectionMerge = Callable[[list[dict[str, Any]]], list[dict[str, Any]]]


class MessageStore(EntityStore):
    """Messages keyed by ``(remoteJid, id)`` within a session."""

    spec = MESSAGE_TABLE

    async def merge_collection(
        self,
        identity: Identity,
        field_name: str,
        merge: CollectionMerge,
        *,
        timeout: float | None = None,
    ) -> bool:
        """Replace a JSON collection field with ``merge(current)``.

        The row is locked with ``SELECT ... FOR UPDATE`` so concurrent merges
        on the same message serialize.  Returns False when the message does
        not exist.
        """
        column = self.spec.column_for(field_name)
        if column is None or column.type is not ColumnType.JSONB:
            raise ValueError(f"{field_name!r} is not a JSON field of {self.table}")
        key = self._key(identity)
        where = f"session_id = $1 AND {self._identity_clause(2)}"

        async with self._connection(None, operation=f"merge_{field_name}", timeout=timeout) as conn:
            row = await conn.fetchrow(
                f"SELECT {column.column} FROM {self.table} WHERE {where} FOR UPDATE",
                self.session_id,
                *key,
            )
            if row is None:
                return False
            current = row[column.column]
            if isinstance(current, str):
                current = json.loads(current)
            merged = merge(list(current or []))
            await conn.execute(
                f"UPDATE {self.table} SET {column.column} = ${len(key) + 2} WHERE {where}",
                self.session_id,
                *key,
                json.dumps(merged),
            )
        self._record_written("update")
        return True

    async def merge_update(
        self,
        identity: Identity,
        patch: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> bool:
        """Overlay *patch* on the stored message in one transaction.

        Returns False when the message does not exist.
        """
        key = self._key(identity)
        where = f"session_id = $1 AND {self._identity_clause(2)}"
        async with self._connection(None, operation="merge_update", timeout=timeout) as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {self.table} WHERE {where} FOR UPDATE", self.session_id, *key
            )
            if row is None:
                return False
            current = self._decode_row(row)
            merged = {**current, **self._storable(patch)}
            changed = {
                name: value
                for name, value in merged.items()
                if name not in self.spec.identity and current.get(name) != value
            }
            if changed:
                await self.update(key, changed, strict=True, conn=conn)
        return True
