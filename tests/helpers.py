"""
tests/helpers.py

In-memory stand-ins for the queue table and the stage collaborators.

FakeJobStore honours the same ownership rules as JobStore: every write
after a claim only lands when the row is still PROCESSING and owned by the
caller. Several stores can share one table via ``for_owner`` to model
competing workers.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from voicedoc.core.models import (
    STAGE_PAYLOAD_FIELDS,
    HeartbeatRecord,
    Job,
    JobStatus,
    ReleaseOutcome,
    Stage,
)
from voicedoc.services.base import MediaFile
from voicedoc.stages import (
    AnalyzeStage,
    AudioStoreStage,
    CreateDocumentStage,
    QueueNotificationStage,
    TranscribeStage,
)
from voicedoc.workers.backoff import RetryPolicy

FAR_PAST = datetime(2020, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_job(job_id: str = "job-1", **fields: Any) -> Job:
    defaults: Dict[str, Any] = {
        "id": job_id,
        "job_status": JobStatus.READY,
        "stage": Stage.RECEIVED,
        "received_at": FAR_PAST,
        "tenant_id": "tenant-a",
        "sender": "whatsapp:+15550001111",
        "sender_name": "Dana",
        "media_ref": f"https://media.example.test/{job_id}",
        "media_content_type": "audio/ogg",
    }
    defaults.update(fields)
    return Job.model_validate(defaults)


class FakeJobStore:
    """Dict-backed queue table bound to one owner id."""

    def __init__(
        self,
        owner_id: str = "worker-a",
        jobs: Optional[Dict[str, Job]] = None,
        retry_policy: RetryPolicy | None = None,
        lease_seconds: float = 600.0,
    ):
        self.owner_id = owner_id
        self.jobs: Dict[str, Job] = jobs if jobs is not None else {}
        self.retry_policy = retry_policy or RetryPolicy(jitter_max_seconds=0)
        self.lease_seconds = lease_seconds
        self.calls: List[tuple] = []
        self.heartbeats: List[HeartbeatRecord] = []
        self.claim_error: Exception | None = None
        self.requeue_error: Exception | None = None
        self.ready_now_error: Exception | None = None
        self.advance_errors: Dict[Stage, Exception] = {}
        self.complete_error: Exception | None = None
        # When set, claim_batch waits on it before selecting rows
        self.claim_gate: asyncio.Event | None = None
        self.swept = 0

    def for_owner(self, owner_id: str) -> "FakeJobStore":
        """Another worker's view of the same table."""
        return FakeJobStore(owner_id, self.jobs, self.retry_policy, self.lease_seconds)

    def add(self, *jobs: Job) -> None:
        for job in jobs:
            self.jobs[job.id] = job

    def _owned(self, job_id: str) -> Job | None:
        job = self.jobs.get(job_id)
        if job is None or job.owner_id != self.owner_id:
            return None
        if job.job_status is not JobStatus.PROCESSING:
            return None
        return job

    def _update(self, job_id: str, **fields: Any) -> None:
        self.jobs[job_id] = self.jobs[job_id].model_copy(update=fields)

    # -- claim ---------------------------------------------------------------

    async def claim_batch(self, limit: int) -> List[Job]:
        self.calls.append(("claim_batch", limit))
        if self.claim_error is not None:
            raise self.claim_error
        if self.claim_gate is not None:
            await self.claim_gate.wait()
        now = utcnow()

        def eligible(job: Job) -> bool:
            if job.job_status is JobStatus.READY:
                return job.next_run_at is None or job.next_run_at <= now
            return (
                job.job_status is JobStatus.PROCESSING
                and job.lease_expires_at is not None
                and job.lease_expires_at < now
                and job.owner_id != self.owner_id
                and job.attempt_count < self.retry_policy.max_attempts
            )

        candidates = sorted(
            (job for job in self.jobs.values() if eligible(job)),
            key=lambda j: (
                j.next_run_at is not None,
                j.next_run_at or FAR_PAST,
                j.received_at or FAR_PAST,
            ),
        )[:limit]

        claimed = []
        for job in candidates:
            self._update(
                job.id,
                job_status=JobStatus.PROCESSING,
                owner_id=self.owner_id,
                attempt_count=job.attempt_count + 1,
                failed_reason=None,
                failed_stage=None,
                processing_started_at=now,
                lease_expires_at=now + timedelta(seconds=self.lease_seconds),
            )
            claimed.append(self.jobs[job.id])
        return claimed

    # -- ownership-scoped writes --------------------------------------------

    async def advance_stage(
        self, job_id: str, stage: Stage, payload: Optional[Dict[str, Any]] = None
    ) -> bool:
        self.calls.append(("advance_stage", job_id, Stage(stage)))
        if Stage(stage) in self.advance_errors:
            raise self.advance_errors[Stage(stage)]
        if self._owned(job_id) is None:
            return False
        updates: Dict[str, Any] = {"stage": Stage(stage)}
        for column in STAGE_PAYLOAD_FIELDS[Stage(stage)]:
            if payload and column in payload:
                updates[column] = payload[column]
        self._update(job_id, **updates)
        return True

    async def complete(self, job_id: str) -> bool:
        self.calls.append(("complete", job_id))
        if self.complete_error is not None:
            raise self.complete_error
        if self._owned(job_id) is None:
            return False
        self._update(
            job_id,
            job_status=JobStatus.DONE,
            stage=Stage.COMPLETED,
            owner_id=None,
            lease_expires_at=None,
            next_run_at=None,
            processed_at=utcnow(),
        )
        return True

    async def release(
        self,
        job_id: str,
        outcome: ReleaseOutcome,
        reason: str,
        failed_stage: Optional[Stage] = None,
    ) -> bool:
        self.calls.append(("release", job_id, ReleaseOutcome(outcome), reason))
        job = self._owned(job_id)
        if job is None:
            return False
        final = ReleaseOutcome(outcome)
        if final is ReleaseOutcome.RETRY and self.retry_policy.is_exhausted(job.attempt_count):
            final = ReleaseOutcome.FAILED
        next_run_at = None
        if final is ReleaseOutcome.RETRY:
            next_run_at = self.retry_policy.next_run_at(job.attempt_count)
        self._update(
            job_id,
            job_status=JobStatus.READY if final is ReleaseOutcome.RETRY else JobStatus.FAILED,
            owner_id=None,
            lease_expires_at=None,
            next_run_at=next_run_at,
            failed_reason=reason,
            failed_stage=failed_stage,
        )
        return True

    async def requeue_for_shutdown(self, job_ids: Sequence[str]) -> int:
        self.calls.append(("requeue_for_shutdown", list(job_ids)))
        if self.requeue_error is not None:
            raise self.requeue_error
        count = 0
        for job_id in job_ids:
            if self._owned(job_id) is None:
                continue
            self._update(
                job_id,
                job_status=JobStatus.READY,
                owner_id=None,
                lease_expires_at=None,
                next_run_at=utcnow(),
                failed_reason="shutdown_requeue",
            )
            count += 1
        return count

    # -- health ---------------------------------------------------------------

    async def count_ready_now(self) -> int:
        if self.ready_now_error is not None:
            raise self.ready_now_error
        now = utcnow()
        return sum(
            1
            for job in self.jobs.values()
            if job.job_status is JobStatus.READY
            and (job.next_run_at is None or job.next_run_at <= now)
        )

    async def upsert_heartbeat(self, record: HeartbeatRecord) -> None:
        self.heartbeats.append(record)

    async def fail_abandoned_leases(self) -> int:
        self.swept += 1
        return 0


# =============================================================================
# Collaborators
# =============================================================================


class FakeMedia:
    def __init__(self, content: bytes = b"OggS-audio", content_type: str = "audio/ogg"):
        self.content = content
        self.content_type = content_type
        self.downloads: List[str] = []
        self.error: Exception | None = None

    async def download(self, media_ref: str) -> MediaFile:
        self.downloads.append(media_ref)
        if self.error is not None:
            raise self.error
        return MediaFile(self.content, self.content_type)


class FakeBlobs:
    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.uploads: List[str] = []
        self.exists_error: Exception | None = None
        self.upload_error: Exception | None = None

    async def exists(self, key: str) -> bool:
        if self.exists_error is not None:
            raise self.exists_error
        return bool(self.objects.get(key))

    async def upload(self, key: str, data: bytes, content_type: str) -> None:
        self.uploads.append(key)
        if self.upload_error is not None:
            raise self.upload_error
        self.objects[key] = data

    async def download(self, key: str) -> bytes:
        return self.objects[key]


class FakeTranscriber:
    def __init__(self, text: str = "Visited Mrs. Lee, blood pressure normal."):
        self.text = text
        self.calls = 0
        self.error: Exception | None = None

    async def transcribe(self, audio: bytes, filename: str) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.text


class FakeAnalyzer:
    def __init__(self, analysis: Dict[str, Any] | None = None):
        self.analysis = analysis if analysis is not None else {"summary": "Routine visit"}
        self.calls = 0
        self.error: Exception | None = None

    async def analyze(self, transcript: str, job: Job) -> Dict[str, Any] | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.analysis


class FakeDocuments:
    def __init__(self, document_id: str = "doc-1"):
        self.document_id = document_id
        self.calls = 0
        self.error: Exception | None = None

    async def create_document(self, job: Job) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.document_id


class FakeNotifier:
    def __init__(self, notification_id: str = "notif-1"):
        self.notification_id = notification_id
        self.calls = 0

    async def queue_notification(self, job: Job) -> str:
        self.calls += 1
        return self.notification_id


class Collaborators:
    """One fake per stage, plus the processors wired to them."""

    def __init__(self) -> None:
        self.media = FakeMedia()
        self.blobs = FakeBlobs()
        self.transcriber = FakeTranscriber()
        self.analyzer = FakeAnalyzer()
        self.documents = FakeDocuments()
        self.notifier = FakeNotifier()

    def processors(self) -> list:
        return [
            AudioStoreStage(self.media, self.blobs, prefix=".private"),
            TranscribeStage(self.transcriber, self.blobs, self.media),
            AnalyzeStage(self.analyzer),
            CreateDocumentStage(self.documents),
            QueueNotificationStage(self.notifier),
        ]
