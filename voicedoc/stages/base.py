"""
Stage processor contract and the tagged stage result.

A processor turns a job checkpointed at the previous stage into the payload
of its own stage. Processors are idempotent: when the job already carries
their output field they return it without calling their collaborator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from voicedoc.core.error_taxonomy import (
    ERR_STAGE_EMPTY_OUTPUT,
    ERR_STAGE_MISSING_INPUT,
    ErrorCode,
    classify_exception,
)
from voicedoc.core.models import Job, Stage


class ResultKind(str, Enum):
    SUCCESS = "SUCCESS"
    SOFT_FAILURE = "SOFT_FAILURE"
    HARD_FAILURE = "HARD_FAILURE"


@dataclass(frozen=True)
class StageResult:
    """
    Outcome of one stage.

    SOFT_FAILURE with ``retryable=False`` means a prerequisite is permanently
    missing and the job is released FAILED. Any other failure is released
    RETRY; only HARD_FAILURE counts toward degraded health.
    """

    kind: ResultKind
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    retryable: bool = True
    reused: bool = False

    @property
    def ok(self) -> bool:
        return self.kind is ResultKind.SUCCESS

    @property
    def hard(self) -> bool:
        return self.kind is ResultKind.HARD_FAILURE

    @classmethod
    def success(cls, payload: Dict[str, Any], reused: bool = False) -> "StageResult":
        return cls(ResultKind.SUCCESS, payload=payload, reused=reused)

    @classmethod
    def missing(cls, message: str) -> "StageResult":
        """Prerequisite permanently absent; retrying cannot help."""
        return cls(
            ResultKind.SOFT_FAILURE,
            error=message,
            error_code=ERR_STAGE_MISSING_INPUT,
            retryable=False,
        )

    @classmethod
    def empty(cls, message: str) -> "StageResult":
        """Collaborator answered but produced nothing usable."""
        return cls(ResultKind.SOFT_FAILURE, error=message, error_code=ERR_STAGE_EMPTY_OUTPUT)

    @classmethod
    def from_error(cls, exc: BaseException, code: ErrorCode | None = None) -> "StageResult":
        """Classify an exception raised by a collaborator."""
        code = code or classify_exception(exc)
        message = str(exc) or type(exc).__name__
        kind = ResultKind.HARD_FAILURE if code.hard else ResultKind.SOFT_FAILURE
        return cls(kind, error=message, error_code=code)


class StageProcessor(ABC):
    """
    One pipeline stage.

    Subclasses set ``stage`` (the checkpoint they produce) and
    ``output_field`` (the job column holding their output) and implement
    ``run``. Exceptions raised by ``run`` are classified by the pipeline.
    A success without ``output_field`` counts as empty output unless
    ``output_required`` is False.
    """

    stage: ClassVar[Stage]
    output_field: ClassVar[str]
    output_required: ClassVar[bool] = True

    async def __call__(self, job: Job) -> StageResult:
        existing = getattr(job, self.output_field, None)
        if existing:
            return StageResult.success({self.output_field: existing}, reused=True)
        return await self.run(job)

    @abstractmethod
    async def run(self, job: Job) -> StageResult: ...
