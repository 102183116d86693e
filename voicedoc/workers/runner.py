"""
VoiceDoc Worker - Worker Loop

Single polling loop per process:

    while not stopped:
        batch = claim_batch(batch_size)
        if empty: wait poll_interval (wakes early on stop)
        else:     run the pipeline over every job concurrently, await all

One job's failure never affects another's outcome. ``in_flight`` holds the
ids of the current batch only and is the hand-off to the shutdown
coordinator. The stop flag is checked between batches; in-flight calls are
not interrupted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Set

from voicedoc.core.error_taxonomy import is_hard_failure
from voicedoc.core.models import Job
from voicedoc.workers.backoff import BackoffState
from voicedoc.workers.heartbeat import FailureWindow
from voicedoc.workers.pipeline import PipelineResult

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_POLL_INTERVAL_SECONDS = 5.0


class ClaimStore(Protocol):
    async def claim_batch(self, limit: int) -> List[Job]: ...


class JobProcessor(Protocol):
    async def process(self, job: Job) -> PipelineResult: ...


@dataclass
class BatchStats:
    """Tally of one claim+process cycle."""

    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    hard_failures: int = 0


class WorkerLoop:
    """
    Owns the in-flight set and the processed counter.

    Both are read by the heartbeat reporter and the shutdown coordinator,
    which receive this object explicitly.
    """

    def __init__(
        self,
        store: ClaimStore,
        pipeline: JobProcessor,
        failures: FailureWindow,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        stop_event: Optional[asyncio.Event] = None,
        backoff: Optional[BackoffState] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.failures = failures
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.stop_event = stop_event or asyncio.Event()
        self.backoff = backoff or BackoffState()

        self.in_flight: Set[str] = set()
        self.processed_total = 0
        self.failed_total = 0
        self.batches = 0
        # Held from claim until the claimed ids are in ``in_flight``
        self._claim_lock = asyncio.Lock()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    async def run_once(self) -> BatchStats:
        """Claim one batch and drive every job through the pipeline."""
        async with self._claim_lock:
            if self.stopping:
                return BatchStats()
            jobs = await self.store.claim_batch(self.batch_size)
            self.in_flight.update(job.id for job in jobs)
        stats = BatchStats(claimed=len(jobs))
        if not jobs:
            return stats

        try:
            outcomes = await asyncio.gather(
                *(self.pipeline.process(job) for job in jobs),
                return_exceptions=True,
            )
        finally:
            self.in_flight.clear()

        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                stats.failed += 1
                logger.error(
                    f"Job crashed outside the pipeline: {type(outcome).__name__}: {outcome}",
                    exc_info=outcome,
                    extra={"job_id": job.id},
                )
                if is_hard_failure(outcome):
                    stats.hard_failures += 1
                    self.failures.record(str(outcome))
                continue

            if outcome.success:
                stats.succeeded += 1
            else:
                stats.failed += 1
                if outcome.hard_failure:
                    stats.hard_failures += 1
                    self.failures.record(outcome.error_message)

        self.processed_total += stats.succeeded
        self.failed_total += stats.failed
        self.batches += 1

        degraded = self.failures.is_degraded()
        logger.log(
            logging.WARNING if degraded else logging.INFO,
            f"Batch finished: {stats.succeeded} ok, {stats.failed} failed",
            extra={
                "batch_size": stats.claimed,
                "succeeded": stats.succeeded,
                "failed": stats.failed,
                "recent_hard_failures": self.failures.count(),
                "degraded": degraded,
            },
        )
        return stats

    async def claim_settled(self) -> None:
        """
        Wait for a claim in progress to land in ``in_flight``.

        Once the stop event is set no new claim starts, so after this returns
        ``in_flight`` holds every job this loop owns.
        """
        async with self._claim_lock:
            pass

    async def run(self) -> None:
        """Poll until the stop event is set."""
        logger.info(
            "Worker loop started (batch_size=%d, poll_interval=%.1fs)",
            self.batch_size,
            self.poll_interval,
        )
        while not self.stopping:
            try:
                stats = await self.run_once()
            except Exception as e:
                delay = self.backoff.record_failure()
                self.failures.record(f"{type(e).__name__}: {e}")
                logger.error(
                    f"Worker loop error, backing off {delay:.1f}s: {type(e).__name__}: {e}",
                    exc_info=True,
                    extra={
                        "count": self.backoff.consecutive_failures,
                        "total_failures": self.backoff.total_failures,
                    },
                )
                await self._wait(delay)
                continue

            self.backoff.record_success()
            if stats.claimed == 0:
                await self._wait(self.poll_interval)

        logger.info(
            "Worker loop stopped (processed=%d, failed=%d, batches=%d)",
            self.processed_total,
            self.failed_total,
            self.batches,
        )

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
