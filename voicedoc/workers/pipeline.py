"""
VoiceDoc Worker - Stage Pipeline

Drives one claimed job from its current checkpoint to COMPLETED.

Stages run strictly in order, starting after the job's checkpoint:

    RECEIVED -> AUDIO_STORED -> TRANSCRIBED -> ANALYZED
             -> DOC_CREATED -> NOTIF_QUEUED -> COMPLETED

After each successful stage the checkpoint and its payload are written
through the ownership-scoped store before the next stage starts. The first
failure releases the job (RETRY or FAILED) and stops. Losing ownership
stops immediately without touching the row again.

Every stage call is bounded by ``stage_timeout``; a timeout is a hard
failure. Exceptions are classified here, once, into a StageResult.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence

from voicedoc.core.error_taxonomy import ERR_OWNERSHIP_LOST, ERR_STAGE_TIMEOUT
from voicedoc.core.logging import (
    LogContext,
    Timer,
    log_worker_failure,
    log_worker_start,
    log_worker_success,
)
from voicedoc.core.models import STAGE_ORDER, Job, ReleaseOutcome, Stage, stage_index
from voicedoc.stages.base import ResultKind, StageProcessor, StageResult

logger = logging.getLogger(__name__)

DEFAULT_STAGE_TIMEOUT_SECONDS = 300.0


class PipelineStore(Protocol):
    """The subset of JobStore the pipeline writes through."""

    async def advance_stage(
        self, job_id: str, stage: Stage, payload: Optional[Dict[str, Any]] = None
    ) -> bool: ...

    async def complete(self, job_id: str) -> bool: ...

    async def release(
        self,
        job_id: str,
        outcome: ReleaseOutcome,
        reason: str,
        failed_stage: Optional[Stage] = None,
    ) -> bool: ...


@dataclass(frozen=True)
class PipelineResult:
    job_id: str
    success: bool
    hard_failure: bool = False
    error_message: Optional[str] = None
    failed_stage: Optional[Stage] = None
    ownership_lost: bool = False


class StagePipeline:
    """
    Runs the stage processors for a job.

    Args:
        store: Ownership-scoped job store
        processors: One processor per stage between RECEIVED and COMPLETED,
            in pipeline order
        stage_timeout: Seconds each stage may take
        max_attempts: Only used for log fields
    """

    def __init__(
        self,
        store: PipelineStore,
        processors: Sequence[StageProcessor],
        stage_timeout: float = DEFAULT_STAGE_TIMEOUT_SECONDS,
        max_attempts: int = 5,
    ):
        expected = [s for s in STAGE_ORDER if s not in (Stage.RECEIVED, Stage.COMPLETED)]
        actual = [p.stage for p in processors]
        if actual != expected:
            raise ValueError(
                f"Processors must cover {[s.value for s in expected]} in order, "
                f"got {[s.value for s in actual]}"
            )
        self.store = store
        self.processors = list(processors)
        self.stage_timeout = stage_timeout
        self.max_attempts = max_attempts

    async def process(self, job: Job) -> PipelineResult:
        """Run the remaining stages of ``job``. Never raises for stage errors."""
        with LogContext(job_id=job.id), Timer() as timer:
            log_worker_start(logger, job.id, Stage(job.stage).value, job.attempt_count)

            current = job
            active = Stage.COMPLETED
            failure: StageResult | None = None
            try:
                for processor in self.processors:
                    if stage_index(processor.stage) <= current.stage_index:
                        continue
                    active = processor.stage

                    with LogContext(stage=active.value):
                        result = await self._run_stage(processor, current)
                        if not result.ok:
                            failure = result
                            break

                        if not await self.store.advance_stage(current.id, active, result.payload):
                            return self._ownership_lost(current, active)
                        current = current.with_payload(active, result.payload)
                        logger.info(
                            "Stage %s %s",
                            active.value,
                            "reused" if result.reused else "done",
                            extra={"job_id": job.id, "stage": active.value},
                        )
                else:
                    active = Stage.COMPLETED
                    if not await self.store.complete(job.id):
                        return self._ownership_lost(current, Stage.COMPLETED)
            except Exception as e:
                logger.error(f"Unexpected pipeline error: {e}", exc_info=True)
                failure = StageResult.from_error(e)

            if failure is not None:
                return await self._fail(current, active, failure, timer)

            log_worker_success(logger, job.id, timer.elapsed_ms, attempt=job.attempt_count)
            return PipelineResult(job_id=job.id, success=True)

    async def _run_stage(self, processor: StageProcessor, job: Job) -> StageResult:
        try:
            result = await asyncio.wait_for(processor(job), timeout=self.stage_timeout)
        except asyncio.TimeoutError:
            return StageResult(
                ResultKind.HARD_FAILURE,
                error=f"Stage {processor.stage.value} timed out after {self.stage_timeout:.0f}s",
                error_code=ERR_STAGE_TIMEOUT,
            )
        except Exception as e:
            logger.debug("Stage %s raised", processor.stage.value, exc_info=True)
            return StageResult.from_error(e)

        if (
            result.ok
            and processor.output_required
            and not result.payload.get(processor.output_field)
        ):
            return StageResult.empty(
                f"Stage {processor.stage.value} produced no {processor.output_field}"
            )
        return result

    async def _fail(
        self, job: Job, stage: Stage, result: StageResult, timer: Timer
    ) -> PipelineResult:
        outcome = ReleaseOutcome.RETRY if result.retryable else ReleaseOutcome.FAILED
        message = result.error or "unknown error"
        log_worker_failure(
            logger,
            job.id,
            message,
            timer.elapsed_ms,
            attempt=job.attempt_count,
            max_attempts=self.max_attempts,
            stage=stage.value,
            error_code=str(result.error_code) if result.error_code else None,
            outcome=outcome.value,
        )
        released = await self.store.release(job.id, outcome, message, failed_stage=stage)
        return PipelineResult(
            job_id=job.id,
            success=False,
            hard_failure=result.hard,
            error_message=message,
            failed_stage=stage,
            ownership_lost=not released,
        )

    def _ownership_lost(self, job: Job, stage: Stage) -> PipelineResult:
        logger.warning(
            "Ownership lost; abandoning job",
            extra={"job_id": job.id, "stage": stage.value, "error_code": str(ERR_OWNERSHIP_LOST)},
        )
        return PipelineResult(
            job_id=job.id,
            success=False,
            error_message="ownership lost",
            failed_stage=stage,
            ownership_lost=True,
        )
