"""Chat event pipelines."""

from __future__ import annotations

import logging
from typing import Any

from chatsync.errors import UnresolvableAddressError
from chatsync.events import EventKind
from chatsync.handlers.base import EntityHandler, as_list, as_mapping, fold_by_id
from chatsync.models import EntityKind

logger = logging.getLogger(__name__)


class ChatHandler(EntityHandler):
    entity = EntityKind.CHAT

    def routes(self):
        return {
            EventKind.HISTORY_SET: self.on_history_set,
            EventKind.CHATS_UPSERT: self.on_upsert,
            EventKind.CHATS_UPDATE: self.on_update,
            EventKind.CHATS_DELETE: self.on_delete,
        }

    async def prepare(self, raw: Any) -> dict[str, Any] | None:
        """Sanitize a chat payload and canonicalize its id; None when it has none."""
        values = dict(self.sanitize(raw).values)
        try:
            values["id"] = await self.resolver.resolve(values.get("id"), as_mapping(raw))
        except UnresolvableAddressError:
            self.skip("missing_id", as_mapping(raw).get("id"))
            return None
        return values

    async def on_history_set(self, payload: Any) -> None:
        payload = as_mapping(payload)
        is_latest = bool(payload.get("isLatest"))
        records = [
            record
            for record in [await self.prepare(raw) for raw in as_list(payload.get("chats"))]
            if record is not None
        ]
        if not records and not is_latest:
            return
        batching = self.config.batching
        await self.retry.run(
            lambda: self.stores.chats.sync_history(
                records,
                wipe=is_latest,
                chunk_size=batching.chat_chunk_size,
                timeout=self.config.transactions.bulk_timeout_s,
            ),
            name="chats.history_set",
        )

    async def on_upsert(self, payload: Any) -> None:
        records = fold_by_id(
            [r for r in [await self.prepare(raw) for raw in as_list(payload)] if r]
        )

        async def _write(record: dict[str, Any]) -> None:
            await self.retry.run(lambda: self.stores.chats.upsert(record), name="chats.upsert")

        failed = await self.for_each(records, _write, operation="chats.upsert")
        logger.debug("Upserted %d chat(s), %d failed", len(records) - failed, failed)

    async def on_update(self, payload: Any) -> None:
        for raw in as_list(payload):
            record = await self.prepare(raw)
            if record is None:
                continue
            try:
                await self.retry.run(
                    lambda: self.stores.chats.apply_update(record), name="chats.update"
                )
            except Exception:
                logger.error(
                    "Chat update failed for %s",
                    record["id"],
                    exc_info=True,
                    extra={"entity": self.entity.value},
                )

    async def on_delete(self, payload: Any) -> None:
        ids: list[str] = []
        for raw_id in as_list(payload):
            try:
                ids.append(await self.resolver.resolve(raw_id))
            except UnresolvableAddressError:
                self.skip("missing_id", raw_id)
        if not ids:
            return
        removed = await self.retry.run(
            lambda: self.stores.chats.delete(ids), name="chats.delete"
        )
        logger.info("Deleted %d chat(s)", removed)
