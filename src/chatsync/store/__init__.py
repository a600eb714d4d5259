"""Session-scoped storage for chats, contacts, messages and session values."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from chatsync.store.base import BulkWriteResult, EntityStore
from chatsync.store.chats import ChatStore
from chatsync.store.contacts import ContactStore
from chatsync.store.messages import MessageStore
from chatsync.store.sessions import SessionStore

if TYPE_CHECKING:
    from chatsync.context import SyncContext

__all__ = [
    "BulkWriteResult",
    "ChatStore",
    "ContactStore",
    "EntityStore",
    "MessageStore",
    "SessionStore",
    "StoreSet",
]


@dataclass
class StoreSet:
    """The entity stores one session's handlers write through."""

    chats: ChatStore
    contacts: ContactStore
    messages: MessageStore

    @classmethod
    def for_session(cls, context: SyncContext, session_id: str) -> StoreSet:
        """Build the stores of *session_id*.

        Raises :class:`~chatsync.errors.StoreNotInitializedError` when the
        context's database is not connected.
        """
        database = context.require_database()
        tx = context.config.transactions
        kwargs = {
            "metrics": context.metrics,
            "timeout_s": tx.default_timeout_s,
            "bulk_timeout_s": tx.bulk_timeout_s,
        }
        return cls(
            chats=ChatStore(database, session_id, **kwargs),
            contacts=ContactStore(database, session_id, **kwargs),
            messages=MessageStore(database, session_id, **kwargs),
        )
