"""
Audio blob storage backed by Supabase Storage.

The supabase client is synchronous; calls run in a worker thread so the
event loop keeps serving the rest of the batch.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath

from supabase import Client, create_client

logger = logging.getLogger(__name__)


def audio_key(prefix: str, tenant_id: str | None, job_id: str, extension: str) -> str:
    """Deterministic object key so a retried upload lands on the same object."""
    tenant = tenant_id or "unknown"
    return f"{prefix.rstrip('/')}/audio/{tenant}/{job_id}.{extension}"


class SupabaseBlobStore:
    def __init__(self, bucket: str, client: Client | None = None, *, url: str = "", key: str = ""):
        if client is None:
            if not url or not key:
                raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
            logger.info("Creating Supabase storage client")
            client = create_client(url, key)
        self._client = client
        self._bucket = bucket

    def _exists_sync(self, key: str) -> bool:
        folder, name = posixpath.split(key)
        entries = self._client.storage.from_(self._bucket).list(folder, {"search": name})
        for entry in entries or []:
            if entry.get("name") == name:
                size = (entry.get("metadata") or {}).get("size") or 0
                return int(size) > 0
        return False

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._exists_sync, key)

    async def upload(self, key: str, data: bytes, content_type: str) -> None:
        await asyncio.to_thread(
            self._client.storage.from_(self._bucket).upload,
            path=key,
            file=data,
            file_options={"content-type": content_type, "upsert": "true"},
        )
        logger.info("Audio uploaded to storage: %s/%s (%d bytes)", self._bucket, key, len(data))

    async def download(self, key: str) -> bytes:
        data = await asyncio.to_thread(self._client.storage.from_(self._bucket).download, key)
        logger.info("Audio downloaded from storage: %s/%s (%d bytes)", self._bucket, key, len(data))
        return data
