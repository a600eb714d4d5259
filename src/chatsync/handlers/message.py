"""Message event pipelines.

Bulk history goes through the batch scheduler; incremental upserts are
written one by one under retry, and a ``notify`` upsert for a conversation
without a chat row emits a synthetic ``chats.upsert`` so the chat appears.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any

from chatsync.batching import BatchPlan
from chatsync.errors import UnresolvableAddressError
from chatsync.events import EventKind
from chatsync.handlers.base import EntityHandler, as_list, as_mapping
from chatsync.models import EntityKind
from chatsync.sanitizer import coerce_timestamp, to_json_safe
from chatsync.store.merge import merge_reaction, merge_receipt

logger = logging.getLogger(__name__)

STORED_UPSERT_TYPES = frozenset({"append", "notify"})


class MessageHandler(EntityHandler):
    entity = EntityKind.MESSAGE

    def routes(self):
        return {
            EventKind.HISTORY_SET: self.on_history_set,
            EventKind.MESSAGES_UPSERT: self.on_upsert,
            EventKind.MESSAGES_UPDATE: self.on_update,
            EventKind.MESSAGES_DELETE: self.on_delete,
            EventKind.MESSAGE_RECEIPT_UPDATE: self.on_receipt,
            EventKind.MESSAGES_REACTION: self.on_reaction,
        }

    async def resolve_key(self, key: Any) -> tuple[str, str] | None:
        """Return ``(remoteJid, id)`` for a message key, or None when incomplete."""
        key = as_mapping(key)
        message_id = key.get("id")
        if not isinstance(message_id, str) or not message_id:
            self.skip("missing_id", dict(key))
            return None
        try:
            remote_jid = await self.resolver.resolve(
                key.get("remoteJid"), key, lookup_key=message_id
            )
        except UnresolvableAddressError:
            self.skip("missing_id", dict(key))
            return None
        return remote_jid, message_id

    async def prepare(self, raw: Any) -> dict[str, Any] | None:
        identity = await self.resolve_key(as_mapping(raw).get("key"))
        if identity is None:
            return None
        values = dict(self.sanitize(raw).values)
        values["remoteJid"], values["id"] = identity
        return values

    async def on_history_set(self, payload: Any) -> None:
        raw_messages = as_list(as_mapping(payload).get("messages"))
        records = [r for r in [await self.prepare(raw) for raw in raw_messages] if r]
        if not records:
            return

        async def _write_batch(batch: list[dict[str, Any]], plan: BatchPlan) -> None:
            await self.retry.run(
                lambda: self.stores.messages.bulk_upsert(batch, timeout=plan.timeout_s),
                name="messages.history_set.batch",
            )

        result = await self.scheduler.run(records, _write_batch, entity=self.entity.value)
        logger.info(
            "Synced %d of %d message(s) in %d batch(es) of %d",
            result.committed_items,
            result.total_items,
            result.plan.batch_count(result.total_items),
            result.plan.batch_size,
        )

    async def on_upsert(self, payload: Any) -> None:
        payload = as_mapping(payload)
        upsert_type = payload.get("type")
        if upsert_type not in STORED_UPSERT_TYPES:
            logger.debug("Ignoring messages.upsert of type %r", upsert_type)
            return
        for raw in as_list(payload.get("messages")):
            record = await self.prepare(raw)
            if record is None:
                continue
            try:
                await self.retry.run(
                    lambda: self.stores.messages.upsert(record), name="messages.upsert"
                )
                if upsert_type == "notify":
                    await self._ensure_chat(record["remoteJid"], raw)
            except Exception:
                logger.error(
                    "Message upsert failed for %s/%s",
                    record["remoteJid"],
                    record["id"],
                    exc_info=True,
                    extra={"entity": self.entity.value},
                )

    async def _ensure_chat(self, remote_jid: str, raw: Any) -> None:
        if await self.stores.chats.exists(remote_jid):
            return
        chat = {
            "id": remote_jid,
            "conversationTimestamp": coerce_timestamp(as_mapping(raw).get("messageTimestamp")),
            "unreadCount": 1,
        }
        logger.debug("Emitting chats.upsert for new conversation %s", remote_jid)
        result = self.events.emit(EventKind.CHATS_UPSERT.value, [chat])
        if inspect.isawaitable(result):
            await result

    async def on_update(self, payload: Any) -> None:
        for item in as_list(payload):
            item = as_mapping(item)
            identity = await self.resolve_key(item.get("key"))
            if identity is None:
                continue
            patch = self.sanitize(item.get("update")).values
            try:
                found = await self.retry.run(
                    lambda: self.stores.messages.merge_update(identity, patch),
                    name="messages.update",
                )
            except Exception:
                logger.error(
                    "Message update failed for %s/%s",
                    *identity,
                    exc_info=True,
                    extra={"entity": self.entity.value},
                )
                continue
            if not found:
                self.skip("missing_row", "/".join(identity))

    async def on_delete(self, payload: Any) -> None:
        # stored messages are immutable; deletions are observed only
        logger.debug("Ignoring messages.delete event: %r", payload)

    async def on_receipt(self, payload: Any) -> None:
        for item in as_list(payload):
            item = as_mapping(item)
            receipt = to_json_safe(item.get("receipt"))
            if not isinstance(receipt, dict):
                continue
            await self._merge(item.get("key"), "userReceipt", receipt, merge_receipt)

    async def on_reaction(self, payload: Any) -> None:
        for item in as_list(payload):
            item = as_mapping(item)
            reaction = to_json_safe(item.get("reaction"))
            if not isinstance(reaction, dict):
                continue
            await self._merge(item.get("key"), "reactions", reaction, merge_reaction)

    async def _merge(self, key: Any, field_name: str, entry: dict[str, Any], merge) -> None:
        identity = await self.resolve_key(key)
        if identity is None:
            return
        try:
            found = await self.retry.run(
                lambda: self.stores.messages.merge_collection(
                    identity, field_name, lambda current: merge(current, entry)
                ),
                name=f"messages.{field_name}",
            )
        except Exception:
            logger.error(
                "Merging %s failed for %s/%s",
                field_name,
                *identity,
                exc_info=True,
                extra={"entity": self.entity.value},
            )
            return
        if not found:
            self.skip("missing_row", "/".join(identity))
