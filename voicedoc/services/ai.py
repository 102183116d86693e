"""
Speech-to-text and transcript analysis via OpenAI.

Errors from the SDK propagate unchanged; the error taxonomy classifies
rate limits, timeouts and 5xx as hard failures.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from openai import AsyncOpenAI

from voicedoc.core.models import Job

logger = logging.getLogger(__name__)

DEFAULT_TRANSCRIBE_MODEL = "whisper-1"
DEFAULT_ANALYSIS_MODEL = "gpt-4o-mini"

ANALYSIS_SYSTEM_PROMPT = """You turn voice-message transcripts into structured documentation.
Extract:
- subject (who or what the message is about)
- service_date (ISO date if mentioned)
- summary (two or three sentences)
- action_items (list of strings)
- alerts (list of urgent concerns)
- language (ISO 639-1 code of the transcript)

Respond in JSON with keys: subject, service_date, summary, action_items, alerts, language"""


class OpenAITranscriber:
    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        api_key: str | None = None,
        model: str = DEFAULT_TRANSCRIBE_MODEL,
        timeout: float = 120.0,
    ):
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)
        self._model = model

    async def transcribe(self, audio: bytes, filename: str) -> str:
        logger.info("Sending audio for transcription (%d bytes)", len(audio))
        transcription = await self._client.audio.transcriptions.create(
            model=self._model,
            file=(filename, audio),
            response_format="text",
        )
        text = transcription if isinstance(transcription, str) else transcription.text
        text = (text or "").strip()
        logger.info("Transcription complete (%d chars)", len(text))
        return text


class OpenAIAnalyzer:
    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        api_key: str | None = None,
        model: str = DEFAULT_ANALYSIS_MODEL,
        timeout: float = 60.0,
    ):
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)
        self._model = model

    async def analyze(self, transcript: str, job: Job) -> Dict[str, Any] | None:
        """
        Return the structured analysis, or None when the model gave nothing usable.
        """
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                {"role": "user", "content": transcript},
            ],
            response_format={"type": "json_object"},
            temperature=0.3,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            logger.warning("No content in analysis response", extra={"job_id": job.id})
            return None
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse analysis response: {e}", extra={"job_id": job.id})
            return None
        if not isinstance(parsed, dict) or not parsed:
            return None
        parsed.setdefault("action_items", [])
        parsed.setdefault("alerts", [])
        parsed["raw_transcript"] = transcript
        return parsed
