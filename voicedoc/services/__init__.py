"""External collaborators used by the stage processors."""

from voicedoc.services.base import (
    Analyzer,
    BlobStore,
    DocumentClient,
    MediaFile,
    MediaSource,
    Notifier,
    Transcriber,
)

__all__ = [
    "Analyzer",
    "BlobStore",
    "DocumentClient",
    "MediaFile",
    "MediaSource",
    "Notifier",
    "Transcriber",
]
