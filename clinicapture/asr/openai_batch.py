from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any, Optional

import openai

from ..internal_core.errors import TranscriptionFailed
from .base import BatchTranscriptionProvider

logger = logging.getLogger(__name__)


class OpenAIBatchProvider(BatchTranscriptionProvider):
    def __init__(
        self,
        *,
        model: str = "whisper-1",
        api_key: str = "",
        base_url: str = "",
        client: Optional[Any] = None,
    ) -> None:
        self._model = model
        if client is None:
            client = openai.AsyncOpenAI(api_key=api_key or None, base_url=base_url or None)
        self._client = client

    async def transcribe(self, audio_b64: str, *, language: str = "pt", timeout_sec: float = 60.0) -> str:
        try:
            wav_bytes = base64.b64decode(audio_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TranscriptionFailed("Audio payload is not valid base64", code="INVALID_AUDIO") from e
        try:
            result = await asyncio.wait_for(
                self._client.audio.transcriptions.create(
                    model=self._model,
                    file=("audio.wav", wav_bytes, "audio/wav"),
                    language=language,
                ),
                timeout=timeout_sec,
            )
        except asyncio.TimeoutError as e:
            raise TranscriptionFailed(
                f"Transcription request timed out after {timeout_sec}s", code="TRANSCRIPTION_TIMEOUT"
            ) from e
        except openai.OpenAIError as e:
            logger.warning("openai transcription failed error=%s", type(e).__name__)
            raise TranscriptionFailed(f"Transcription service error: {e}") from e
        return str(getattr(result, "text", "") or "")

    def name(self) -> str:
        return "openai"
