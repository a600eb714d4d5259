"""Chat rows: history rebuilds and increment-aware updates."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from chatsync.models import CHAT_TABLE
from chatsync.store.base import BulkWriteResult, EntityStore

logger = logging.getLogger(__name__)

UNREAD_COUNT = "unreadCount"


def is_unread_increment(patch: Mapping[str, Any]) -> bool:
    """True when *patch* carries a positive ``unreadCount`` delta."""
    value = patch.get(UNREAD_COUNT)
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class ChatStore(EntityStore):
    spec = CHAT_TABLE

    async def apply_update(self, patch: Mapping[str, Any]) -> bool:
        """Upsert a chat patch; returns True when the chat was created.

        A positive ``unreadCount`` is added to the stored counter, while zero
        or a negative value overwrites it.
        """
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
        """Write a history-sync chat set in a single transaction.

        With *wipe* the session's chats are deleted first, so the set becomes
        the complete chat list.  Records are written in chunks of
        *chunk_size* to bound statement size.
        """
        result = BulkWriteResult()
        async with self._connection(
            None, operation="sync_history", bulk=True, timeout=timeout
        ) as conn:
            if wipe:
                removed = await self.delete_all(conn=conn)
                logger.info("Cleared %d chat(s) before full history sync", removed)
            for start in range(0, len(records), chunk_size):
                result += await self.bulk_upsert(records[start : start + chunk_size], conn=conn)
        logger.info(
            "Synced chats: %d added, %d updated",
            result.created,
            result.updated,
            extra={"entity": self.entity},
        )
        return result
