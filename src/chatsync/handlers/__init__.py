"""Per-entity event pipelines."""

from chatsync.handlers.base import EntityHandler
from chatsync.handlers.chat import ChatHandler
from chatsync.handlers.contact import ContactHandler
from chatsync.handlers.message import MessageHandler

__all__ = ["ChatHandler", "ContactHandler", "EntityHandler", "MessageHandler"]
