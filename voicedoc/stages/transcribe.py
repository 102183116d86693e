"""AUDIO_STORED -> TRANSCRIBED."""

from __future__ import annotations

import logging
import posixpath

from voicedoc.core.models import Job, Stage
from voicedoc.services.base import BlobStore, MediaSource, Transcriber, extension_for
from voicedoc.stages.base import StageProcessor, StageResult

logger = logging.getLogger(__name__)


class TranscribeStage(StageProcessor):
    stage = Stage.TRANSCRIBED
    output_field = "transcript_text"

    def __init__(self, transcriber: Transcriber, blobs: BlobStore, media: MediaSource):
        self.transcriber = transcriber
        self.blobs = blobs
        self.media = media

    async def run(self, job: Job) -> StageResult:
        if job.blob_ref:
            audio = await self.blobs.download(job.blob_ref)
            filename = posixpath.basename(job.blob_ref)
        elif job.media_ref:
            logger.info(
                "No stored audio, falling back to provider download", extra={"job_id": job.id}
            )
            media = await self.media.download(job.media_ref)
            audio = media.content
            filename = f"{job.id}.{extension_for(media.content_type)}"
        else:
            return StageResult.missing("No audio source available")

        text = await self.transcriber.transcribe(audio, filename)
        if not text:
            return StageResult.empty("Transcription returned no text")
        return StageResult.success({"transcript_text": text})
