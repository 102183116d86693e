"""TRANSCRIBED -> ANALYZED."""

from __future__ import annotations

from voicedoc.core.models import Job, Stage
from voicedoc.services.base import Analyzer
from voicedoc.stages.base import StageProcessor, StageResult


class AnalyzeStage(StageProcessor):
    stage = Stage.ANALYZED
    output_field = "analysis"

    def __init__(self, analyzer: Analyzer):
        self.analyzer = analyzer

    async def run(self, job: Job) -> StageResult:
        if not job.transcript_text:
            return StageResult.missing("No transcript available for analysis")
        analysis = await self.analyzer.analyze(job.transcript_text, job)
        if not analysis:
            return StageResult.empty("Analysis returned no result")
        return StageResult.success({"analysis": analysis})
