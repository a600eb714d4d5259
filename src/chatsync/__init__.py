"""chatsync: persist a messaging client's chats, contacts and messages to PostgreSQL."""

from chatsync.config import SyncConfig, load_config
from chatsync.context import SyncContext
from chatsync.db import Database
from chatsync.events import EventBus, EventKind, EventSource
from chatsync.router import EventRouter, Subscription
from chatsync.schema import ensure_schema
from chatsync.store import SessionStore

__all__ = [
    "Database",
    "EventBus",
    "EventKind",
    "EventRouter",
    "EventSource",
    "SessionStore",
    "Subscription",
    "SyncConfig",
    "SyncContext",
    "ensure_schema",
    "load_config",
]
