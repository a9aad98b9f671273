from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..internal_core.errors import TranscriptionFailed
from .base import BatchTranscriptionProvider

logger = logging.getLogger(__name__)


class HttpBatchProvider(BatchTranscriptionProvider):
    """Posts `{"audio": <base64>}` to a transcription endpoint and reads `{"text"}`."""

    def __init__(
        self,
        url: str,
        *,
        api_key: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not url:
            raise ValueError("HttpBatchProvider requires a URL")
        self._url = url
        self._api_key = api_key
        self._client = client

    async def transcribe(self, audio_b64: str, *, language: str = "pt", timeout_sec: float = 60.0) -> str:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload = {"audio": audio_b64, "language": language}
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=payload, headers=headers, timeout=timeout_sec)
            else:
                async with httpx.AsyncClient(timeout=timeout_sec) as client:
                    resp = await client.post(self._url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise TranscriptionFailed(
                f"Transcription request timed out after {timeout_sec}s", code="TRANSCRIPTION_TIMEOUT"
            ) from e
        except httpx.HTTPStatusError as e:
            logger.warning("batch transcription http_status=%s", e.response.status_code)
            raise TranscriptionFailed(f"Transcription service returned {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise TranscriptionFailed(f"Transcription request failed: {e}") from e
        if not isinstance(data, dict):
            raise TranscriptionFailed("Transcription response is not a JSON object")
        if data.get("error"):
            raise TranscriptionFailed(f"Transcription service error: {data['error']}")
        return str(data.get("text") or "")

    def name(self) -> str:
        return "http"
