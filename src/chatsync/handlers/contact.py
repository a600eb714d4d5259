"""Contact event pipelines."""

from __future__ import annotations

import logging
from typing import Any

from chatsync.errors import UnresolvableAddressError
from chatsync.events import EventKind
from chatsync.handlers.base import EntityHandler, as_list, as_mapping, fold_by_id
from chatsync.models import EntityKind

logger = logging.getLogger(__name__)


class ContactHandler(EntityHandler):
    entity = EntityKind.CONTACT

    def routes(self):
        return {
            EventKind.HISTORY_SET: self.on_history_set,
            EventKind.CONTACTS_UPSERT: self.on_upsert,
            EventKind.CONTACTS_UPDATE: self.on_update,
        }

    async def prepare(self, raw: Any) -> dict[str, Any] | None:
        values = dict(self.sanitize(raw).values)
        try:
            values["id"] = await self.resolver.resolve(values.get("id"), as_mapping(raw))
        except UnresolvableAddressError:
            self.skip("missing_id", as_mapping(raw).get("id"))
            return None
        return values

    async def _upsert_all(self, records: list[dict[str, Any]], operation: str) -> int:
        async def _write(record: dict[str, Any]) -> None:
            await self.retry.run(lambda: self.stores.contacts.upsert(record), name=operation)

        return await self.for_each(records, _write, operation=operation)

    async def on_history_set(self, payload: Any) -> None:
        payload = as_mapping(payload)
        records = fold_by_id(
            [
                record
                for record in [await self.prepare(raw) for raw in as_list(payload.get("contacts"))]
                if record is not None
            ]
        )
        failed = await self._upsert_all(records, "contacts.history_set")
        deleted = 0
        if payload.get("isLatest"):
            keep = [record["id"] for record in records]
            deleted = await self.retry.run(
                lambda: self.stores.contacts.delete_except(keep),
                name="contacts.history_set.prune",
            )
        logger.info(
            "Synced contacts: %d written, %d failed, %d removed",
            len(records) - failed,
            failed,
            deleted,
        )

    async def on_upsert(self, payload: Any) -> None:
        records = fold_by_id(
            [r for r in [await self.prepare(raw) for raw in as_list(payload)] if r]
        )
        await self._upsert_all(records, "contacts.upsert")

    async def on_update(self, payload: Any) -> None:
        for raw in as_list(payload):
            record = await self.prepare(raw)
            if record is None:
                continue
            try:
                await self.retry.run(
                    lambda: self.stores.contacts.upsert(record), name="contacts.update"
                )
            except Exception:
                logger.error(
                    "Contact update failed for %s",
                    record["id"],
                    exc_info=True,
                    extra={"entity": self.entity.value},
                )
