"""Unit tests for volume-tiered batch scheduling."""

from __future__ import annotations

import asyncio

import pytest

from chatsync.batching import BatchPlan, BatchProgress, BatchScheduler
from chatsync.config import BatchTier

pytestmark = pytest.mark.unit


class TestPlan:
    @pytest.mark.parametrize(
        ("total", "expected"),
        [
            (20_000, BatchPlan(10, 2, 45.0)),
            (10_001, BatchPlan(10, 2, 45.0)),
            (10_000, BatchPlan(15, 2, 30.0)),
            (5_001, BatchPlan(15, 2, 30.0)),
            (5_000, BatchPlan(25, 3, 25.0)),
            (1_001, BatchPlan(25, 3, 25.0)),
            (1_000, BatchPlan(50, 4, 20.0)),
            (0, BatchPlan(50, 4, 20.0)),
        ],
    )
    def test_default_tiers(self, total, expected):
        assert BatchScheduler().plan(total) == expected

    def test_sizes_shrink_monotonically_with_volume(self):
        scheduler = BatchScheduler()
        plans = [scheduler.plan(total) for total in range(0, 30_000, 250)]

        for smaller, larger in zip(plans, plans[1:], strict=False):
            assert larger.batch_size <= smaller.batch_size
            assert larger.max_concurrent_batches <= smaller.max_concurrent_batches

    def test_custom_tiers_any_order(self):
        scheduler = BatchScheduler(
            [
                BatchTier(min_items=0, batch_size=100, max_concurrent=8, timeout_s=5),
                BatchTier(min_items=500, batch_size=20, max_concurrent=2, timeout_s=60),
            ]
        )

        assert scheduler.plan(501).batch_size == 20
        assert scheduler.plan(500).batch_size == 100

    def test_batch_count(self):
        assert BatchPlan(34, 2, 1.0).batch_count(100) == 3
        assert BatchPlan(50, 2, 1.0).batch_count(0) == 0


class TestRun:
    async def test_failed_batch_does_not_block_siblings(self):
        items = list(range(100))
        committed: list[int] = []

        async def worker(batch: list[int], plan: BatchPlan) -> int:
            await asyncio.sleep(0)
            if batch[0] == 34:
                raise RuntimeError("transaction rolled back")
            committed.extend(batch)
            return len(batch)

        result = await BatchScheduler().run(
            items, worker, plan=BatchPlan(batch_size=34, max_concurrent_batches=2, timeout_s=1.0)
        )

        assert sorted(committed) == list(range(34)) + list(range(68, 100))
        assert len(result.failures) == 1
        assert result.failures[0].index == 1
        assert result.failures[0].size == 34
        assert isinstance(result.failures[0].error, RuntimeError)
        assert result.committed_items == 66
        assert not result.ok
        assert sorted(result.results) == [32, 34]

    async def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0

        async def worker(batch: list[int], plan: BatchPlan) -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1

        plan = BatchPlan(batch_size=2, max_concurrent_batches=3, timeout_s=1)
        await BatchScheduler().run(list(range(40)), worker, plan=plan)

        assert peak == 3

    async def test_progress_reported_every_n_batches_and_at_end(self):
        reports: list[BatchProgress] = []

        async def worker(batch: list[int], plan: BatchPlan) -> None:
            return None

        await BatchScheduler(progress_every=2).run(
            list(range(10)),
            worker,
            plan=BatchPlan(batch_size=2, max_concurrent_batches=1, timeout_s=1),
            on_progress=reports.append,
        )

        assert [r.completed_batches for r in reports] == [2, 4, 5]
        assert reports[-1].processed_items == 10
        assert reports[-1].percent == 100.0
        assert reports[0].ratio == pytest.approx(0.4)

    async def test_empty_input_runs_nothing(self):
        async def worker(batch: list[int], plan: BatchPlan) -> None:
            raise AssertionError("worker must not run")

        result = await BatchScheduler().run([], worker)

        assert result.ok
        assert result.total_items == 0

    async def test_progress_callback_errors_are_contained(self):
        def broken(progress: BatchProgress) -> None:
            raise RuntimeError("observer failed")

        async def worker(batch: list[int], plan: BatchPlan) -> None:
            return None

        result = await BatchScheduler(progress_every=1).run(
            [1, 2, 3], worker, on_progress=broken
        )

        assert result.ok

    def test_requires_a_tier(self):
        with pytest.raises(ValueError):
            BatchScheduler([])
