"""Pipeline stage processors, in execution order."""

from voicedoc.stages.analyze import AnalyzeStage
from voicedoc.stages.audio_store import AudioStoreStage
from voicedoc.stages.base import ResultKind, StageProcessor, StageResult
from voicedoc.stages.create_doc import CreateDocumentStage
from voicedoc.stages.notify import QueueNotificationStage
from voicedoc.stages.transcribe import TranscribeStage

__all__ = [
    "AnalyzeStage",
    "AudioStoreStage",
    "CreateDocumentStage",
    "QueueNotificationStage",
    "ResultKind",
    "StageProcessor",
    "StageResult",
    "TranscribeStage",
]
