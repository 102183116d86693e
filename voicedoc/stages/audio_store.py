"""
RECEIVED -> AUDIO_STORED: copy the provider's media into blob storage.

Storage trouble does not block the job: when the bucket cannot be checked or
written, AUDIO_STORED is checkpointed without a ``blob_ref`` and
transcription downloads straight from the provider's media URL.
"""

from __future__ import annotations

import logging

from voicedoc.core.models import Job, Stage
from voicedoc.services.base import BlobStore, MediaSource, extension_for
from voicedoc.services.storage import audio_key
from voicedoc.stages.base import StageProcessor, StageResult

logger = logging.getLogger(__name__)


class AudioStoreStage(StageProcessor):
    stage = Stage.AUDIO_STORED
    output_field = "blob_ref"
    output_required = False

    def __init__(self, media: MediaSource, blobs: BlobStore, prefix: str = ".private"):
        self.media = media
        self.blobs = blobs
        self.prefix = prefix

    async def run(self, job: Job) -> StageResult:
        if not job.media_ref:
            return StageResult.missing("No media reference on job")

        # The key is known before download when the content type was recorded at ingestion
        if job.media_content_type:
            ext = extension_for(job.media_content_type)
            key = audio_key(self.prefix, job.tenant_id, job.id, ext)
            try:
                if await self.blobs.exists(key):
                    logger.info("Audio already stored, skipping download: %s", key)
                    return StageResult.success({"blob_ref": key})
            except Exception as e:
                return self._without_storage(job, e)

        media = await self.media.download(job.media_ref)
        key = audio_key(self.prefix, job.tenant_id, job.id, extension_for(media.content_type))
        try:
            if await self.blobs.exists(key):
                logger.info("Audio already stored, skipping upload: %s", key)
            else:
                await self.blobs.upload(key, media.content, media.content_type)
        except Exception as e:
            return self._without_storage(job, e)
        return StageResult.success({"blob_ref": key})

    def _without_storage(self, job: Job, exc: Exception) -> StageResult:
        logger.warning(
            f"Audio storage unavailable, transcribing from provider media: "
            f"{type(exc).__name__}: {exc}",
            extra={"job_id": job.id},
        )
        return StageResult.success({})
