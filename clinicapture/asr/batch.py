from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Callable, Optional

from ..capture.audio_utils import encode_base64
from ..internal_core.contracts import TranscriptSegment
from ..internal_core.errors import EmptyTranscript, ScribeError, TranscriptionFailed
from .aggregator import TranscriptAggregator
from .base import BatchTranscriptionProvider

logger = logging.getLogger(__name__)


class ChunkedBatchTranscriber:
    """Submits recorded audio to a batch provider and feeds the aggregator.

    Interim submissions only touch the interim view; a final submission
    replaces the transcript and completes it. In periodic mode the audio
    captured so far is resubmitted every `interval_sec`; a tick that finds a
    request still in flight is skipped.
    """

    def __init__(
        self,
        provider: BatchTranscriptionProvider,
        aggregator: TranscriptAggregator,
        *,
        language: str = "pt",
        timeout_sec: float = 60.0,
        interval_sec: float = 5.0,
    ) -> None:
        self._provider = provider
        self._aggregator = aggregator
        self._language = language
        self._timeout_sec = float(timeout_sec)
        self._interval_sec = float(interval_sec)
        self._periodic_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self.skipped_ticks = 0

    @property
    def interval_sec(self) -> float:
        return self._interval_sec

    @property
    def periodic_running(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    async def transcribe(self, audio: bytes, is_final: bool) -> str:
        audio_b64 = encode_base64(audio)
        t0 = time.time()
        try:
            text = await asyncio.wait_for(
                self._provider.transcribe(audio_b64, language=self._language, timeout_sec=self._timeout_sec),
                timeout=self._timeout_sec,
            )
        except asyncio.TimeoutError as e:
            raise TranscriptionFailed(
                f"Transcription timed out after {self._timeout_sec:.0f}s", code="TRANSCRIPTION_TIMEOUT"
            ) from e
        text = (text or "").strip()
        logger.info(
            "batch transcription provider=%s final=%s bytes=%s chars=%s elapsed_ms=%s",
            self._provider.name(),
            is_final,
            len(audio),
            len(text),
            int((time.time() - t0) * 1000),
        )
        if not text:
            if is_final:
                raise EmptyTranscript("The transcription service returned no text.")
            return ""
        segment = TranscriptSegment(text=text, is_final=is_final, source_timestamp=time.time(), source="batch")
        self._aggregator.on_segment(segment)
        if is_final:
            self._aggregator.complete("batch", text)
        return text

    def start_periodic(self, snapshot: Callable[[], Optional[bytes]]) -> None:
        if self.periodic_running:
            return
        self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_loop(snapshot))

    async def _periodic_loop(self, snapshot: Callable[[], Optional[bytes]]) -> None:
        while True:
            await asyncio.sleep(self._interval_sec)
            if self._inflight is not None and not self._inflight.done():
                self.skipped_ticks += 1
                logger.debug("batch tick skipped in_flight=1")
                continue
            audio = snapshot()
            if not audio:
                continue
            self._inflight = asyncio.get_running_loop().create_task(self._interim(audio))

    async def _interim(self, audio: bytes) -> None:
        try:
            await self.transcribe(audio, is_final=False)
        except ScribeError as e:
            logger.warning("batch interim transcription failed code=%s", e.code)

    async def stop_periodic(self) -> None:
        for attr in ("_periodic_task", "_inflight"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task is None or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
