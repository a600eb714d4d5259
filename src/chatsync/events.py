"""Event kinds consumed from the messaging client and the event-source contract."""

from __future__ import annotations

import enum
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], "Awaitable[None] | None"]


class EventKind(enum.StrEnum):
    """Event names emitted by the messaging client."""

    HISTORY_SET = "messaging-history.set"
    CHATS_UPSERT = "chats.upsert"
    CHATS_UPDATE = "chats.update"
    CHATS_DELETE = "chats.delete"
    CONTACTS_UPSERT = "contacts.upsert"
    CONTACTS_UPDATE = "contacts.update"
    MESSAGES_UPSERT = "messages.upsert"
    MESSAGES_UPDATE = "messages.update"
    MESSAGES_DELETE = "messages.delete"
    MESSAGE_RECEIPT_UPDATE = "message-receipt.update"
    MESSAGES_REACTION = "messages.reaction"


@runtime_checkable
class EventSource(Protocol):
    """What the engine needs from the messaging client's event emitter."""

    def on(self, event: str, handler: EventHandler) -> None: ...

    def off(self, event: str, handler: EventHandler) -> None: ...

    def emit(self, event: str, payload: Any) -> Any: ...


class EventBus:
    """In-process :class:`EventSource` whose ``emit`` awaits every handler.

    Handlers run in registration order.  A handler that raises is logged and
    does not stop the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(str(event), []).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(str(event), [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(str(event), []))

    async def emit(self, event: str, payload: Any) -> None:
        for handler in list(self._handlers.get(str(event), [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.error("Handler for %s raised", event, exc_info=True)
