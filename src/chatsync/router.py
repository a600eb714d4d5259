"""Session-level wiring of the entity handlers to an event source.

Typical use::

    context = SyncContext.from_config(load_config())
    pool = await context.database.connect()
    await ensure_schema(pool)
    router = EventRouter(session_id, client.ev, context, alias_lookup=client.lid_lookup)
    subscription = router.listen()
    ...
    subscription.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chatsync.handlers import ChatHandler, ContactHandler, EntityHandler, MessageHandler
from chatsync.identity import IdentityResolver
from chatsync.store import StoreSet

if TYPE_CHECKING:
    from chatsync.context import SyncContext
    from chatsync.events import EventSource
    from chatsync.identity import AliasLookup

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """Handle returned by :meth:`EventRouter.listen`; closing it unsubscribes."""

    router: EventRouter

    @property
    def active(self) -> bool:
        return self.router.listening

    def close(self) -> None:
        self.router.unlisten()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventRouter:
    """Owns the chat, contact and message handlers of one session.

    Stores are built from ``context`` unless supplied, which requires a
    connected database; the constructor raises
    :class:`~chatsync.errors.StoreNotInitializedError` otherwise.
    """

    def __init__(
        self,
        session_id: str,
        events: EventSource,
        context: SyncContext,
        *,
        alias_lookup: AliasLookup | None = None,
        stores: StoreSet | None = None,
    ) -> None:
        self.session_id = session_id
        self.events = events
        self.context = context
        self.stores = stores if stores is not None else StoreSet.for_session(context, session_id)
        self.resolver = IdentityResolver(alias_lookup)

        shared = {
            "stores": self.stores,
            "resolver": self.resolver,
            "retry": context.retry_executor(session_id),
            "scheduler": context.batch_scheduler(session_id),
            "config": context.config,
            "metrics": context.metrics,
        }
        self.chats = ChatHandler(session_id, events, **shared)
        self.contacts = ContactHandler(session_id, events, **shared)
        self.messages = MessageHandler(session_id, events, **shared)

    @property
    def handlers(self) -> tuple[EntityHandler, ...]:
        return (self.chats, self.contacts, self.messages)

    @property
    def listening(self) -> bool:
        return any(handler.listening for handler in self.handlers)

    def listen(self) -> Subscription:
        """Subscribe every handler; calling it again is a no-op."""
        if not self.listening:
            logger.info("Listening for events of session %s", self.session_id)
        for handler in self.handlers:
            handler.listen()
        return Subscription(self)

    def unlisten(self) -> None:
        """Unsubscribe every handler; calling it again is a no-op."""
        if self.listening:
            logger.info("Stopped listening for events of session %s", self.session_id)
        for handler in self.handlers:
            handler.unlisten()
