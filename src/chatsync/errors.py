"""Exception taxonomy for the chatsync engine."""

from __future__ import annotations


class ChatSyncError(Exception):
    """Base chatsync error."""


class StoreNotInitializedError(ChatSyncError, RuntimeError):
    """Raised when the storage backend is used before a pool is connected.

    This is a programming error: callers must connect the database before
    constructing any router or store.
    """


class UnresolvableAddressError(ChatSyncError, ValueError):
    """Raised when no canonical address can be produced for an identity field."""

    def __init__(self, address: object) -> None:
        self.address = address
        super().__init__(f"Cannot resolve an address from {address!r}")


class TransactionTimeoutError(ChatSyncError, TimeoutError):
    """Raised when a transaction exceeds its timeout budget."""

    def __init__(self, *, operation: str, timeout_s: float) -> None:
        self.operation = operation
        self.timeout_s = timeout_s
        super().__init__(f"Transaction {operation!r} exceeded its {timeout_s:g}s timeout")
