"""ANALYZED -> DOC_CREATED: hand the analysis to the document API."""

from __future__ import annotations

from voicedoc.core.models import Job, Stage
from voicedoc.services.base import DocumentClient
from voicedoc.stages.base import StageProcessor, StageResult


class CreateDocumentStage(StageProcessor):
    stage = Stage.DOC_CREATED
    output_field = "document_id"

    def __init__(self, client: DocumentClient):
        self.client = client

    async def run(self, job: Job) -> StageResult:
        if not job.analysis:
            return StageResult.missing("No analysis available for document creation")
        document_id = await self.client.create_document(job)
        return StageResult.success({"document_id": document_id})
