"""Credential and signal-key persistence for one messaging session.

Values are JSON documents in the ``sessions.data`` column.  Binary values
are stored with the buffer-aware codec: ``bytes`` become
``{"type": "Buffer", "data": "<base64>"}`` and are revived on read.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from chatsync.models import SESSION_TABLE
from chatsync.store.base import EntityStore

if TYPE_CHECKING:
    from chatsync.core.metrics import SyncMetrics
    from chatsync.db import Database

logger = logging.getLogger(__name__)

CREDS_ID = "creds"

ValueDecoder = Callable[[Any], Any]
CredsFactory = Callable[[], Any]


def fix_id(item_id: str) -> str:
    """Storage-safe form of a session item id (``/`` and ``:`` are replaced)."""
    return item_id.replace("/", "__").replace(":", "-")


def _buffer_default(value: Any) -> Any:
    if isinstance(value, bytes | bytearray | memoryview):
        return {"type": "Buffer", "data": base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _buffer_hook(obj: dict[str, Any]) -> Any:
    if obj.get("type") == "Buffer" and "data" in obj and len(obj) == 2:
        data = obj["data"]
        if isinstance(data, str):
            return base64.b64decode(data, validate=True)
        if isinstance(data, list):
            return bytes(data)
    return obj


def encode_value(value: Any) -> str:
    """Serialize *value*, encoding binary leaves as tagged base64 objects."""
    return json.dumps(value, default=_buffer_default, allow_nan=False)


def decode_value(text: str) -> Any:
    """Inverse of :func:`encode_value`."""
    return json.loads(text, object_hook=_buffer_hook)


def _is_present(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, int | float):
        return value == value and value != 0
    if isinstance(value, str):
        return value != ""
    return True


class SessionRowStore(EntityStore):
    spec = SESSION_TABLE


class SignalKeyStore:
    """Keyed access to the signal keys of a session (``<type>-<id>`` rows)."""

    def __init__(
        self,
        sessions: SessionStore,
        decoders: Mapping[str, ValueDecoder] | None = None,
    ) -> None:
        self._sessions = sessions
        self._decoders = dict(decoders or {})

    async def get(self, key_type: str, ids: Iterable[str]) -> dict[str, Any]:
        """Read every id of *key_type* concurrently; missing ids map to None."""
        ids = list(ids)
        decoder = self._decoders.get(key_type)

        async def _read(item_id: str) -> Any:
            value = await self._sessions.read(f"{key_type}-{item_id}")
            if value is not None and decoder is not None:
                value = decoder(value)
            return value

        values = await asyncio.gather(*(_read(item_id) for item_id in ids))
        return dict(zip(ids, values, strict=True))

    async def set(self, data: Mapping[str, Mapping[str, Any]]) -> None:
        """Write or delete every ``{category: {id: value}}`` entry independently.

        A missing value deletes the entry: None, False, zero, NaN or the empty
        string.  Empty containers and empty byte strings are written.
        """
        tasks = []
        for category, entries in data.items():
            for item_id, value in entries.items():
                name = f"{category}-{item_id}"
                tasks.append(
                    self._sessions.write(name, value)
                    if _is_present(value)
                    else self._sessions.delete(name)
                )
        await asyncio.gather(*tasks)


class SessionStore:
    """Read/write/delete of serialized session values.

    All three operations fail soft: storage errors are logged and reported
    through the return value instead of being raised, so a broken key write
    never tears down the messaging connection.
    """

    def __init__(
        self,
        database: Database,
        session_id: str,
        *,
        metrics: SyncMetrics | None = None,
        timeout_s: float | None = None,
        creds_factory: CredsFactory = dict,
        decoders: Mapping[str, ValueDecoder] | None = None,
    ) -> None:
        self.session_id = session_id
        self._rows = SessionRowStore(database, session_id, metrics=metrics, timeout_s=timeout_s)
        self._creds_factory = creds_factory
        self.keys = SignalKeyStore(self, decoders)
        self.creds: Any = None

    async def write(self, item_id: str, value: Any) -> bool:
        """Persist *value* under *item_id*; returns False when skipped or failed."""
        try:
            data = encode_value(value)
            decode_value(data)
        except (TypeError, ValueError, binascii.Error) as exc:
            logger.error(
                "Cannot serialize session value %s properly, skipping write: %s",
                item_id,
                exc,
                extra={"item_id": item_id},
            )
            return False
        try:
            await self._rows.upsert({"id": fix_id(item_id), "data": data})
        except Exception:
            logger.error("Session write failed for %s", item_id, exc_info=True)
            return False
        return True

    async def read(self, item_id: str) -> Any:
        """Return the stored value, or None when missing or unreadable.

        Corrupted ``creds`` are replaced by a fresh credential object.
        """
        try:
            record = await self._rows.get(fix_id(item_id))
        except Exception:
            logger.error("Session read failed for %s", item_id, exc_info=True)
            return None
        if record is None or record.get("data") is None:
            logger.info("Session value %s not found", item_id)
            return None
        data = record["data"]
        try:
            return decode_value(data)
        except (ValueError, binascii.Error) as exc:
            logger.error(
                "Failed to parse session value %s (%d chars), data may be corrupted: %s",
                item_id,
                len(data),
                exc,
                extra={"item_id": item_id},
            )
            if item_id == CREDS_ID:
                logger.info("Returning fresh credentials after parse failure")
                return self._creds_factory()
            return None

    async def delete(self, item_id: str) -> bool:
        """Delete *item_id*; deleting a missing value is not an error."""
        try:
            removed = await self._rows.delete([fix_id(item_id)])
        except Exception:
            logger.error("Session delete failed for %s", item_id, exc_info=True)
            return False
        if not removed:
            logger.debug("Session value %s already deleted or never stored", item_id)
        return True

    async def load_creds(self) -> Any:
        """Load the credentials, creating fresh ones when none are stored."""
        creds = await self.read(CREDS_ID)
        self.creds = creds if creds is not None else self._creds_factory()
        return self.creds

    async def save_creds(self) -> bool:
        return await self.write(CREDS_ID, self.creds)
