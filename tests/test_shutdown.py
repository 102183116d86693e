"""
Tests for graceful shutdown: requeue of in-flight jobs, idempotence and
error tolerance.
"""

from __future__ import annotations

import asyncio
import signal
from unittest.mock import AsyncMock

import pytest

from tests.helpers import FakeJobStore, make_job
from voicedoc.core.models import Job, JobStatus
from voicedoc.workers.heartbeat import FailureWindow
from voicedoc.workers.pipeline import PipelineResult
from voicedoc.workers.runner import WorkerLoop
from voicedoc.workers.shutdown import ShutdownCoordinator, ShutdownState


class IdlePipeline:
    async def process(self, job):  # pragma: no cover - never reached
        raise AssertionError("not used")


class BlockingPipeline:
    """Holds every job until ``finish`` is set."""

    def __init__(self) -> None:
        self.finish = asyncio.Event()

    async def process(self, job: Job) -> PipelineResult:
        await self.finish.wait()
        return PipelineResult(job_id=job.id, success=True)


async def loop_with_in_flight(store: FakeJobStore, count: int) -> WorkerLoop:
    store.add(*(make_job(f"job-{i}") for i in range(count)))
    claimed = await store.claim_batch(count)
    loop = WorkerLoop(store, IdlePipeline(), FailureWindow())
    loop.in_flight.update(job.id for job in claimed)
    return loop


class TestShutdown:
    @pytest.mark.asyncio
    async def test_requeues_in_flight_jobs(self) -> None:
        store = FakeJobStore()
        loop = await loop_with_in_flight(store, 3)
        heartbeat = AsyncMock()
        close_pool = AsyncMock()
        coordinator = ShutdownCoordinator(
            store, loop, heartbeat=heartbeat, close_pool=close_pool, worker_id="worker-a"
        )

        await coordinator.shutdown("SIGTERM")

        assert ("requeue_for_shutdown", ["job-0", "job-1", "job-2"]) in store.calls
        assert coordinator.requeued == 3
        for job_id in ("job-0", "job-1", "job-2"):
            row = store.jobs[job_id]
            assert row.job_status is JobStatus.READY
            assert row.owner_id is None
        assert loop.stop_event.is_set()
        heartbeat.stop.assert_awaited_once()
        close_pool.assert_awaited_once()
        assert coordinator.state is ShutdownState.STOPPED
        assert coordinator.done.is_set()

    @pytest.mark.asyncio
    async def test_requeued_jobs_claimable_by_another_worker(self) -> None:
        store = FakeJobStore("worker-a")
        loop = await loop_with_in_flight(store, 2)
        await ShutdownCoordinator(store, loop).shutdown()

        other = store.for_owner("worker-b")
        reclaimed = await other.claim_batch(5)
        assert {j.id for j in reclaimed} == {"job-0", "job-1"}

    @pytest.mark.asyncio
    async def test_second_request_is_noop(self) -> None:
        store = FakeJobStore()
        loop = await loop_with_in_flight(store, 1)
        close_pool = AsyncMock()
        coordinator = ShutdownCoordinator(store, loop, close_pool=close_pool)

        first = coordinator.request("SIGTERM")
        second = coordinator.request("SIGINT")
        assert first is not None
        assert second is None
        await first
        await coordinator.shutdown("again")

        requeues = [c for c in store.calls if c[0] == "requeue_for_shutdown"]
        assert len(requeues) == 1
        close_pool.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_errors_do_not_block_exit(self) -> None:
        store = FakeJobStore()
        loop = await loop_with_in_flight(store, 2)
        store.requeue_error = ConnectionError("db down")
        heartbeat = AsyncMock()
        heartbeat.stop.side_effect = RuntimeError("heartbeat stuck")
        close_pool = AsyncMock(side_effect=OSError("socket closed"))
        coordinator = ShutdownCoordinator(
            store, loop, heartbeat=heartbeat, close_pool=close_pool
        )

        await coordinator.shutdown()

        assert coordinator.state is ShutdownState.STOPPED
        assert coordinator.done.is_set()
        assert coordinator.requeued == 0
        close_pool.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_claim_in_progress_is_requeued(self) -> None:
        """Jobs from a claim that lands after the stop request are still handed back."""
        store = FakeJobStore()
        store.add(make_job("job-0"), make_job("job-1"))
        store.claim_gate = asyncio.Event()
        pipeline = BlockingPipeline()
        loop = WorkerLoop(store, pipeline, FailureWindow())
        coordinator = ShutdownCoordinator(store, loop)

        batch = asyncio.create_task(loop.run_once())
        await asyncio.sleep(0)
        shutdown = asyncio.create_task(coordinator.shutdown("SIGTERM"))
        await asyncio.sleep(0.01)
        assert not shutdown.done()

        store.claim_gate.set()
        await asyncio.wait_for(shutdown, timeout=1.0)

        assert coordinator.requeued == 2
        for job_id in ("job-0", "job-1"):
            assert store.jobs[job_id].job_status is JobStatus.READY
            assert store.jobs[job_id].owner_id is None

        pipeline.finish.set()
        await asyncio.wait_for(batch, timeout=1.0)

    @pytest.mark.asyncio
    async def test_stuck_claim_does_not_block_exit(self) -> None:
        store = FakeJobStore()
        store.add(make_job("job-0"))
        store.claim_gate = asyncio.Event()
        loop = WorkerLoop(store, IdlePipeline(), FailureWindow())
        close_pool = AsyncMock()
        coordinator = ShutdownCoordinator(store, loop, close_pool=close_pool, claim_timeout=0.05)

        batch = asyncio.create_task(loop.run_once())
        await asyncio.sleep(0)
        await asyncio.wait_for(coordinator.shutdown(), timeout=1.0)

        assert coordinator.state is ShutdownState.STOPPED
        close_pool.assert_awaited_once()
        batch.cancel()
        await asyncio.gather(batch, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_nothing_in_flight_skips_requeue(self) -> None:
        store = FakeJobStore()
        loop = WorkerLoop(store, IdlePipeline(), FailureWindow())
        await ShutdownCoordinator(store, loop).shutdown()
        assert not any(c[0] == "requeue_for_shutdown" for c in store.calls)

    @pytest.mark.asyncio
    async def test_signal_handlers_route_to_request(self) -> None:
        store = FakeJobStore()
        loop = WorkerLoop(store, IdlePipeline(), FailureWindow())
        coordinator = ShutdownCoordinator(store, loop)
        event_loop = asyncio.get_running_loop()
        coordinator.install_signal_handlers(event_loop)
        try:
            signal.raise_signal(signal.SIGTERM)
            await asyncio.wait_for(coordinator.done.wait(), timeout=1.0)
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                event_loop.remove_signal_handler(sig)

        assert coordinator.state is ShutdownState.STOPPED
