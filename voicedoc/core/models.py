"""
VoiceDoc Worker - Core Data Models

Pydantic models and enums shared by the job store, the stage pipeline and
the heartbeat reporter.

Usage:
    from voicedoc.core.models import Job, Stage

    job = Job.model_validate(row)
    if job.stage_index >= stage_index(Stage.TRANSCRIBED):
        ...
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# =============================================================================
# Enums
# =============================================================================


class JobStatus(str, Enum):
    """Queue row lifecycle status."""

    READY = "READY"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


class Stage(str, Enum):
    """Pipeline checkpoint. Ordered; a job's stage never moves backwards."""

    RECEIVED = "RECEIVED"
    AUDIO_STORED = "AUDIO_STORED"
    TRANSCRIBED = "TRANSCRIBED"
    ANALYZED = "ANALYZED"
    DOC_CREATED = "DOC_CREATED"
    NOTIF_QUEUED = "NOTIF_QUEUED"
    COMPLETED = "COMPLETED"


class ReleaseOutcome(str, Enum):
    """Outcome requested when releasing a job without completing it."""

    RETRY = "RETRY"
    FAILED = "FAILED"


class WorkerStatus(str, Enum):
    """Self-reported worker health."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)

# Payload columns each stage produces. advance_stage only ever writes these.
STAGE_PAYLOAD_FIELDS: Dict[Stage, tuple[str, ...]] = {
    Stage.RECEIVED: (),
    Stage.AUDIO_STORED: ("blob_ref",),
    Stage.TRANSCRIBED: ("transcript_text",),
    Stage.ANALYZED: ("analysis",),
    Stage.DOC_CREATED: ("document_id",),
    Stage.NOTIF_QUEUED: ("notification_id",),
    Stage.COMPLETED: (),
}


def stage_index(stage: Stage | str) -> int:
    """Position of ``stage`` in the pipeline order."""
    return STAGE_ORDER.index(Stage(stage))


# =============================================================================
# Base Configuration
# =============================================================================


class FlexibleModel(BaseModel):
    """Base model that allows extra fields (database rows carry more columns)."""

    model_config = ConfigDict(
        validate_assignment=True,
        extra="ignore",
        str_strip_whitespace=True,
    )


# =============================================================================
# Queue Models
# =============================================================================


class Job(FlexibleModel):
    """One inbound voice message moving through the pipeline."""

    id: str = Field(..., min_length=1)
    job_status: JobStatus = JobStatus.READY
    stage: Stage = Stage.RECEIVED
    owner_id: Optional[str] = None
    attempt_count: int = Field(default=0, ge=0)
    next_run_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    failed_stage: Optional[Stage] = None
    failed_reason: Optional[str] = None
    received_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    # Source fields, written at ingestion
    tenant_id: Optional[str] = None
    sender: Optional[str] = None
    sender_name: Optional[str] = None
    body: Optional[str] = None
    media_ref: Optional[str] = None
    media_content_type: Optional[str] = None

    # Stage checkpoints
    blob_ref: Optional[str] = None
    transcript_text: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None
    document_id: Optional[str] = None
    notification_id: Optional[str] = None

    @field_validator("stage", mode="before")
    @classmethod
    def default_stage(cls, v: Any) -> Any:
        return Stage.RECEIVED if v is None else v

    @property
    def stage_index(self) -> int:
        return stage_index(self.stage)

    def with_payload(self, stage: Stage, payload: Dict[str, Any] | None) -> "Job":
        """Return a copy checkpointed at ``stage`` with its payload applied."""
        updates: Dict[str, Any] = {"stage": stage}
        for key in STAGE_PAYLOAD_FIELDS[stage]:
            if payload and key in payload:
                updates[key] = payload[key]
        return self.model_copy(update=updates)


class HeartbeatRecord(BaseModel):
    """Row upserted into worker_heartbeats on every tick."""

    worker_id: str
    kind: str = "external"
    started_at: datetime
    jobs_in_flight: int = Field(default=0, ge=0)
    jobs_processed_total: int = Field(default=0, ge=0)
    queue_ready_now: int = Field(default=0, ge=0)
    current_status: WorkerStatus = WorkerStatus.HEALTHY
    last_error: Optional[str] = None
    version: str
    hostname: str
