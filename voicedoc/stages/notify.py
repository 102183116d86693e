"""DOC_CREATED -> NOTIF_QUEUED: queue the sender confirmation."""

from __future__ import annotations

from voicedoc.core.models import Job, Stage
from voicedoc.services.base import Notifier
from voicedoc.stages.base import StageProcessor, StageResult


class QueueNotificationStage(StageProcessor):
    stage = Stage.NOTIF_QUEUED
    output_field = "notification_id"

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    async def run(self, job: Job) -> StageResult:
        if not job.document_id:
            return StageResult.missing("No document to notify about")
        notification_id = await self.notifier.queue_notification(job)
        return StageResult.success({"notification_id": notification_id})
