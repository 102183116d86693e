"""
Collaborator contracts used by the stage processors.

Each stage talks to exactly one of these. Concrete implementations live in
the sibling modules; tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Protocol

from voicedoc.core.models import Job

DEFAULT_AUDIO_CONTENT_TYPE = "audio/ogg"

_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/opus": "opus",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/wav": "wav",
    "audio/webm": "webm",
}


def extension_for(content_type: str | None) -> str:
    """File extension for an audio content type (``ogg`` when unknown)."""
    base = (content_type or DEFAULT_AUDIO_CONTENT_TYPE).split(";")[0].strip().lower()
    return _EXTENSIONS.get(base, "ogg")


@dataclass(frozen=True)
class MediaFile:
    content: bytes
    content_type: str = DEFAULT_AUDIO_CONTENT_TYPE


class MediaSource(Protocol):
    async def download(self, media_ref: str) -> MediaFile: ...


class BlobStore(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def upload(self, key: str, data: bytes, content_type: str) -> None: ...

    async def download(self, key: str) -> bytes: ...


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes, filename: str) -> str: ...


class Analyzer(Protocol):
    async def analyze(self, transcript: str, job: Job) -> Dict[str, Any] | None: ...


class DocumentClient(Protocol):
    async def create_document(self, job: Job) -> str: ...


class Notifier(Protocol):
    async def queue_notification(self, job: Job) -> str: ...
