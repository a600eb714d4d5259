"""Volume-tiered batching for bulk backfills.

Large history syncs are split into batches whose size and in-flight count
shrink as the total volume grows, so each batch transaction stays inside its
timeout budget and the connection pool is never flooded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from chatsync.config import DEFAULT_BATCH_TIERS, BatchTier

if TYPE_CHECKING:
    from chatsync.config import BatchingConfig
    from chatsync.core.metrics import SyncMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[["BatchProgress"], None]


@dataclass(frozen=True)
class BatchPlan:
    """Sizing chosen for one bulk write."""

    batch_size: int
    max_concurrent_batches: int
    timeout_s: float

    def batch_count(self, total: int) -> int:
        return -(-total // self.batch_size) if total > 0 else 0


@dataclass(frozen=True)
class BatchProgress:
    """Cumulative progress of a bulk write, reported every N batches."""

    completed_batches: int
    total_batches: int
    processed_items: int
    total_items: int

    @property
    def ratio(self) -> float:
        return self.processed_items / self.total_items if self.total_items else 1.0

    @property
    def percent(self) -> float:
        return round(self.ratio * 100, 1)


@dataclass(frozen=True)
class BatchFailure:
    """One batch whose worker raised; its transaction is assumed rolled back."""

    index: int
    size: int
    error: BaseException


@dataclass
class BatchRunResult(Generic[T]):
    """Outcome of :meth:`BatchScheduler.run`."""

    plan: BatchPlan
    total_items: int
    results: list[T] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def failed_items(self) -> int:
        return sum(failure.size for failure in self.failures)

    @property
    def committed_items(self) -> int:
        return self.total_items - self.failed_items


class BatchScheduler:
    """Partitions item collections and runs one worker call per batch.

    Parameters
    ----------
    tiers:
        Volume tiers sorted by ``min_items`` descending.  The first tier whose
        threshold the total exceeds wins; the last tier is the fallback.
    progress_every:
        Report cumulative progress after every N completed batches.
    """

    def __init__(
        self,
        tiers: Sequence[BatchTier] = DEFAULT_BATCH_TIERS,
        *,
        progress_every: int = 10,
        metrics: SyncMetrics | None = None,
        session_id: str | None = None,
    ) -> None:
        if not tiers:
            raise ValueError("at least one batch tier is required")
        self._tiers = tuple(sorted(tiers, key=lambda tier: tier.min_items, reverse=True))
        self._progress_every = max(1, progress_every)
        self._metrics = metrics
        self._session_id = session_id

    @classmethod
    def from_config(
        cls,
        config: BatchingConfig,
        *,
        metrics: SyncMetrics | None = None,
        session_id: str | None = None,
    ) -> BatchScheduler:
        return cls(
            config.tiers,
            progress_every=config.progress_every,
            metrics=metrics,
            session_id=session_id,
        )

    @property
    def tiers(self) -> tuple[BatchTier, ...]:
        return self._tiers

    def plan(self, total: int) -> BatchPlan:
        """Pick batch size, concurrency and per-batch timeout for *total* items."""
        tier = self._tiers[-1]
        for candidate in self._tiers:
            if total > candidate.min_items:
                tier = candidate
                break
        return BatchPlan(
            batch_size=tier.batch_size,
            max_concurrent_batches=tier.max_concurrent,
            timeout_s=tier.timeout_s,
        )

    @staticmethod
    def partition(items: Sequence[T], batch_size: int) -> list[list[T]]:
        return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[list[T], BatchPlan], Awaitable[object]],
        *,
        plan: BatchPlan | None = None,
        entity: str = "record",
        on_progress: ProgressCallback | None = None,
    ) -> BatchRunResult:
        """Run ``worker(batch, plan)`` for every batch with bounded concurrency.

        A worker that raises marks only its own batch as failed; batches
        already dispatched keep running and later batches are still started.
        """
        plan = plan or self.plan(len(items))
        batches = self.partition(items, plan.batch_size)
        result: BatchRunResult = BatchRunResult(plan=plan, total_items=len(items))
        if not batches:
            return result

        logger.info(
            "Writing %d %s record(s) in %d batch(es) of %d, %d in flight",
            len(items),
            entity,
            len(batches),
            plan.batch_size,
            plan.max_concurrent_batches,
            extra={"entity": entity},
        )

        semaphore = asyncio.Semaphore(plan.max_concurrent_batches)
        completed = 0
        processed = 0

        async def _run_batch(index: int, batch: list[T]) -> None:
            nonlocal completed, processed
            async with semaphore:
                try:
                    outcome = await worker(batch, plan)
                except Exception as exc:
                    result.failures.append(BatchFailure(index=index, size=len(batch), error=exc))
                    logger.error(
                        "Batch %d/%d of %s records failed (%d record(s)): %s",
                        index + 1,
                        len(batches),
                        entity,
                        len(batch),
                        exc,
                        exc_info=True,
                        extra={"entity": entity, "batch_index": index},
                    )
                    if self._metrics is not None:
                        self._metrics.record_batch(
                            session=self._session_id, entity=entity, ok=False
                        )
                else:
                    result.results.append(outcome)
                    if self._metrics is not None:
                        self._metrics.record_batch(session=self._session_id, entity=entity, ok=True)
                finally:
                    completed += 1
                    processed += len(batch)
                    if completed % self._progress_every == 0 or completed == len(batches):
                        self._report(
                            BatchProgress(
                                completed_batches=completed,
                                total_batches=len(batches),
                                processed_items=processed,
                                total_items=len(items),
                            ),
                            entity,
                            on_progress,
                        )

        await asyncio.gather(*(_run_batch(i, batch) for i, batch in enumerate(batches)))

        result.failures.sort(key=lambda failure: failure.index)
        if result.failures:
            logger.warning(
                "%d of %d %s batch(es) failed; %d record(s) not written",
                len(result.failures),
                len(batches),
                entity,
                result.failed_items,
                extra={"entity": entity},
            )
        return result

    def _report(
        self,
        progress: BatchProgress,
        entity: str,
        on_progress: ProgressCallback | None,
    ) -> None:
        logger.info(
            "Progress: %d/%d %s batches (%d/%d records, %.1f%%)",
            progress.completed_batches,
            progress.total_batches,
            entity,
            progress.processed_items,
            progress.total_items,
            progress.percent,
            extra={"entity": entity},
        )
        if self._metrics is not None:
            self._metrics.record_progress(
                session=self._session_id, entity=entity, ratio=progress.ratio
            )
        if on_progress is not None:
            try:
                on_progress(progress)
            except Exception:
                logger.warning("Progress callback raised", exc_info=True)
