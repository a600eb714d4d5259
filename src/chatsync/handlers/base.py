"""Shared plumbing for the per-entity event handlers."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

from chatsync.core.logging import session_context
from chatsync.events import EventHandler, EventKind, EventSource
from chatsync.sanitizer import SanitizedRecord, sanitize

if TYPE_CHECKING:
    from chatsync.batching import BatchScheduler
    from chatsync.config import SyncConfig
    from chatsync.core.metrics import SyncMetrics
    from chatsync.identity import IdentityResolver
    from chatsync.models import EntityKind
    from chatsync.retry import RetryExecutor
    from chatsync.store import StoreSet

logger = logging.getLogger(__name__)

T = TypeVar("T")


def as_list(payload: Any) -> list[Any]:
    """Event payloads are usually lists; tolerate a single item or None."""
    if payload is None:
        return []
    if isinstance(payload, list | tuple):
        return list(payload)
    return [payload]


def as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def fold_by_id(records: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Merge records sharing an ``id``, later fields overlaying earlier ones.

    Each identity keeps the position of its first arrival.
    """
    folded: dict[Any, dict[str, Any]] = {}
    for record in records:
        folded.setdefault(record["id"], {}).update(record)
    return list(folded.values())


class EntityHandler(ABC):
    """Subscribes one entity's pipelines to an event source.

    Subclasses declare their pipelines in :meth:`routes`.  Every pipeline is
    wrapped so that it runs with the session id bound to the log context and
    never raises back into the event source.
    """

    entity: EntityKind

    def __init__(
        self,
        session_id: str,
        events: EventSource,
        *,
        stores: StoreSet,
        resolver: IdentityResolver,
        retry: RetryExecutor,
        scheduler: BatchScheduler,
        config: SyncConfig,
        metrics: SyncMetrics,
    ) -> None:
        self.session_id = session_id
        self.events = events
        self.stores = stores
        self.resolver = resolver
        self.retry = retry
        self.scheduler = scheduler
        self.config = config
        self.metrics = metrics
        self.listening = False
        self._bound: dict[EventKind, EventHandler] = {
            kind: self._guard(kind, pipeline) for kind, pipeline in self.routes().items()
        }

    @abstractmethod
    def routes(self) -> dict[EventKind, Callable[[Any], Awaitable[None]]]:
        """Map each consumed event kind to its pipeline coroutine."""

    @property
    def event_kinds(self) -> tuple[EventKind, ...]:
        return tuple(self._bound)

    def listen(self) -> None:
        if self.listening:
            return
        for kind, handler in self._bound.items():
            self.events.on(kind.value, handler)
        self.listening = True

    def unlisten(self) -> None:
        if not self.listening:
            return
        for kind, handler in self._bound.items():
            self.events.off(kind.value, handler)
        self.listening = False

    def _guard(
        self, kind: EventKind, pipeline: Callable[[Any], Awaitable[None]]
    ) -> EventHandler:
        async def handler(payload: Any) -> None:
            with session_context(self.session_id):
                try:
                    await pipeline(payload)
                except Exception:
                    logger.error(
                        "Failed to process %s event",
                        kind.value,
                        exc_info=True,
                        extra={"event_kind": kind.value, "entity": self.entity.value},
                    )

        handler.__qualname__ = f"{type(self).__name__}.{kind.name.lower()}"
        return handler

    # -- helpers for subclasses ---------------------------------------------

    def sanitize(self, raw: Any) -> SanitizedRecord:
        record = sanitize(raw, self.entity)
        if record.dropped_fields:
            logger.debug(
                "Filtered unknown %s fields: %s",
                self.entity.value,
                ", ".join(record.dropped_fields),
            )
            self.metrics.record_dropped_fields(
                session=self.session_id, entity=self.entity.value, count=len(record.dropped_fields)
            )
        return record

    def skip(self, reason: str, detail: Any = None) -> None:
        """Record a skipped record; missing identities are warnings."""
        log = logger.warning if reason == "missing_id" else logger.info
        log(
            "Skipping %s record (%s): %r",
            self.entity.value,
            reason,
            detail,
            extra={"entity": self.entity.value, "reason": reason},
        )
        self.metrics.record_skipped(
            session=self.session_id, entity=self.entity.value, reason=reason
        )

    async def for_each(
        self,
        items: Iterable[T],
        worker: Callable[[T], Awaitable[None]],
        *,
        operation: str,
    ) -> int:
        """Run *worker* on every item with bounded concurrency.

        Per-item failures are logged and counted; returns the failure count.
        """
        semaphore = asyncio.Semaphore(self.config.batching.max_parallel_upserts)

        async def _one(item: T) -> bool:
            async with semaphore:
                try:
                    await worker(item)
                    return True
                except Exception:
                    logger.error(
                        "%s failed for one %s record",
                        operation,
                        self.entity.value,
                        exc_info=True,
                        extra={"entity": self.entity.value, "operation": operation},
                    )
                    self.metrics.record_skipped(
                        session=self.session_id, entity=self.entity.value, reason="write_failed"
                    )
                    return False

        results = await asyncio.gather(*(_one(item) for item in items))
        return results.count(False)
