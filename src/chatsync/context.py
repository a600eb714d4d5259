"""Process-wide handles shared by every session component."""

from __future__ import annotations

from dataclasses import dataclass, field

from chatsync.batching import BatchScheduler
from chatsync.config import SyncConfig
from chatsync.core.metrics import SyncMetrics
from chatsync.db import Database
from chatsync.errors import StoreNotInitializedError
from chatsync.retry import RetryExecutor


@dataclass
class SyncContext:
    """Explicitly constructed bundle of the backend handle, config and metrics.

    Build one per process after the database is connected and pass it to
    every router and store; components never look these handles up on their
    own.
    """

    database: Database | None
    config: SyncConfig = field(default_factory=SyncConfig)
    metrics: SyncMetrics = field(default_factory=SyncMetrics)

    @classmethod
    def from_config(cls, config: SyncConfig, *, metrics: SyncMetrics | None = None) -> SyncContext:
        """Build a context with an unconnected :class:`Database` for *config*."""
        return cls(
            database=Database.from_config(config.database, config.transactions),
            config=config,
            metrics=metrics or SyncMetrics(),
        )

    def require_database(self) -> Database:
        """Return the connected database.

        Raises
        ------
        StoreNotInitializedError
            If no database was supplied or its pool is not connected.
        """
        if self.database is None or not self.database.connected:
            raise StoreNotInitializedError(
                "chatsync storage cannot be used before initialization; "
                "connect the Database before starting a session"
            )
        return self.database

    def retry_executor(self, session_id: str | None = None) -> RetryExecutor:
        return RetryExecutor.from_config(
            self.config.retry, metrics=self.metrics, session_id=session_id
        )

    def batch_scheduler(self, session_id: str | None = None) -> BatchScheduler:
        return BatchScheduler.from_config(
            self.config.batching, metrics=self.metrics, session_id=session_id
        )
