from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional, Sequence

from ..asr import build_batch_provider
from ..asr.aggregator import TranscriptAggregator
from ..asr.base import BatchTranscriptionProvider
from ..asr.batch import ChunkedBatchTranscriber
from ..asr.realtime import ConnectFactory, StreamingTranscriptionSession
from ..asr.tokens import RealtimeTokenIssuer, TokenCache
from ..capture.engine import AudioCaptureEngine, AudioInputBackend
from ..capture.level import LevelMonitor
from ..internal_core import audit
from ..internal_core.config import ScribeConfig
from ..internal_core.contracts import (
    ENCOUNTER_DOCUMENT_TYPES,
    DocumentOutcome,
    DocumentType,
    PatientRef,
    StreamState,
)
from ..internal_core.errors import (
    HistoryUnavailable,
    NoAudioCaptured,
    ScribeError,
    TranscriptIncomplete,
    TranscriptionFailed,
)
from ..internal_core.session_store import InMemorySessionStore
from ..note.history import PatientHistoryLoader, build_history_loader
from ..note.llm import CompletionClient, build_completion_client
from ..note.pipeline import DocumentGenerationPipeline
from . import notifications
from .notifications import Notification

logger = logging.getLogger(__name__)


class EncounterRecorder:
    """One consultation: record, transcribe, then generate documents.

    Live transcription is used when enabled and a token source is given; if it
    cannot connect, or fails mid-recording, the periodic batch transcriber
    takes over and the full recording is transcribed at stop.
    """

    def __init__(
        self,
        cfg: ScribeConfig,
        *,
        engine: AudioCaptureEngine,
        batch: ChunkedBatchTranscriber,
        aggregator: TranscriptAggregator,
        pipeline: DocumentGenerationPipeline,
        store: InMemorySessionStore,
        tokens: Optional[TokenCache] = None,
        connect: Optional[ConnectFactory] = None,
        level: Optional[LevelMonitor] = None,
        history_writer: Optional[PatientHistoryLoader] = None,
        notify: Optional[Callable[[Notification], None]] = None,
    ) -> None:
        self._cfg = cfg
        self._engine = engine
        self._batch = batch
        self._aggregator = aggregator
        self._pipeline = pipeline
        self._store = store
        self._level = level
        self._history_writer = history_writer
        self._notify_cb = notify
        self._streaming: Optional[StreamingTranscriptionSession] = None
        if cfg.STREAM_ENABLED and tokens is not None:
            self._streaming = StreamingTranscriptionSession(
                cfg,
                tokens,
                aggregator,
                connect=connect,
                on_state=self._on_stream_state,
                on_error=self._on_stream_error,
                on_closed=self._on_stream_closed,
            )
        self._patient: Optional[PatientRef] = None
        self._last_container: Optional[bytes] = None
        self.session_id: Optional[str] = None

    @property
    def streaming(self) -> Optional[StreamingTranscriptionSession]:
        return self._streaming

    @property
    def engine(self) -> AudioCaptureEngine:
        return self._engine

    @property
    def batch(self) -> ChunkedBatchTranscriber:
        return self._batch

    @property
    def level(self) -> Optional[LevelMonitor]:
        return self._level

    @property
    def store(self) -> InMemorySessionStore:
        return self._store

    @property
    def transcript(self) -> str:
        return self._aggregator.text

    def _notify(self, notification: Notification) -> None:
        if self._notify_cb is None:
            return
        try:
            self._notify_cb(notification)
        except Exception:
            logger.exception("notification subscriber failed")

    def _audit(self, event_type, code: str, detail: str = "", duration_ms: Optional[int] = None) -> None:
        if self.session_id is None:
            return
        audit.log_event(self._store, self.session_id, event_type, code, detail, duration_ms)

    def _fail(self, err: ScribeError, event_type="ERROR") -> None:
        if self.session_id is not None:
            self._store.set_state(self.session_id, "failed")
            self._store.set_error(self.session_id, err.message)
        self._audit(event_type, err.code, err.message)
        self._notify(notifications.from_error(err))

    def _on_stream_state(self, state: StreamState) -> None:
        self._audit("STREAM_STATE", state.upper())
        if state == "connected":
            self._notify(notifications.stream_state(state))

    def _on_stream_error(self, err: ScribeError) -> None:
        logger.warning("live transcription lost, falling back to batch code=%s", err.code)
        self._audit("ERROR", err.code, err.message)
        self._notify(notifications.stream_fallback(err))
        self._aggregator.switch_source("batch")
        if self._engine.state == "recording":
            self._batch.start_periodic(self._engine.snapshot)

    def _on_stream_closed(self, close_code: int) -> None:
        if self._engine.state != "recording" or self._aggregator.mode == "batch":
            return
        logger.warning("live transcription closed by service, falling back to batch close_code=%s", close_code)
        self._audit("STREAM_STATE", "CLOSED_BY_SERVICE", f"close_code={close_code}")
        self._notify(notifications.stream_closed())
        self._aggregator.switch_source("batch")
        self._batch.start_periodic(self._engine.snapshot)

    async def start(self, patient: Optional[PatientRef] = None) -> str:
        """Begin a recording. A call while one is acquiring or recording returns its session id."""
        if self.session_id is not None and self._engine.state in ("acquiring", "recording"):
            logger.info("encounter start ignored state=%s session_id=%s", self._engine.state, self.session_id)
            return self.session_id
        self._patient = patient
        self._last_container = None
        expired = self._store.cleanup_expired_sessions()
        if expired:
            logger.info("expired encounter sessions removed count=%s", expired)
        self.session_id = self._store.create_session(
            patient=patient.model_dump(by_alias=True) if patient is not None else None
        )
        self._audit("SESSION_CREATED", "OK")
        try:
            await self._engine.start()
        except ScribeError as e:
            self._fail(e)
            raise
        self._store.set_state(self.session_id, "recording")
        self._audit("RECORDING_STARTED", "OK", f"sample_rate={self._engine.sample_rate}")
        if self._level is not None:
            self._level.attach()

        if self._streaming is not None:
            self._aggregator.begin_session("streaming")
            self._streaming.attach(self._engine.subscribe_slices)
            try:
                await self._streaming.start()
            except ScribeError as e:
                await self._streaming.stop()
                logger.warning("live transcription unavailable code=%s", e.code)
                self._audit("ERROR", e.code, e.message)
                self._notify(notifications.stream_fallback(e))
                self._aggregator.begin_session("batch")
                self._batch.start_periodic(self._engine.snapshot)
            else:
                if self._streaming.state != "connected":
                    self._on_stream_closed(self._streaming.last_close_code or 1000)
        else:
            self._aggregator.begin_session("batch")
            self._batch.start_periodic(self._engine.snapshot)
        return self.session_id

    async def stop(self) -> str:
        """Stop recording and return the final transcript."""
        t0 = time.time()
        await self._batch.stop_periodic()
        try:
            container = await self._engine.stop()
        except NoAudioCaptured as e:
            self._fail(e, "TRANSCRIPTION_FAILED")
            raise
        finally:
            if self._streaming is not None:
                await self._streaming.stop()
        if container is None:
            return self._aggregator.text
        self._last_container = container
        self._audit("RECORDING_STOPPED", "OK", f"bytes={len(container)}")
        return await self._finish_transcript(container, t0)

    async def _finish_transcript(self, container: bytes, t0: float) -> str:
        assert self.session_id is not None
        self._store.set_state(self.session_id, "transcribing")
        if self._aggregator.mode == "streaming" and self._aggregator.text:
            self._aggregator.complete("streaming")
        else:
            self._aggregator.switch_source("batch")
            try:
                await self._batch.transcribe(container, is_final=True)
            except TranscriptionFailed as e:
                self._fail(e, "TRANSCRIPTION_FAILED")
                raise
        text = self._aggregator.text
        self._store.set_transcript(self.session_id, text, self._aggregator.mode)
        self._audit(
            "TRANSCRIPTION_DONE",
            "OK",
            f"source={self._aggregator.mode} chars={len(text)}",
            int((time.time() - t0) * 1000),
        )
        self._notify(notifications.transcription_complete(text))
        return text

    async def retry_transcription(self) -> str:
        """Resubmit the last recording for a final batch transcription."""
        if self._last_container is None:
            raise NoAudioCaptured("There is no recording to transcribe.")
        return await self._finish_transcript(self._last_container, time.time())

    async def generate_documents(
        self,
        document_types: Sequence[DocumentType] = ENCOUNTER_DOCUMENT_TYPES,
        *,
        review_required: Optional[bool] = None,
    ) -> Dict[DocumentType, DocumentOutcome]:
        if self.session_id is None:
            raise RuntimeError("No encounter has been recorded")
        if not self._aggregator.completed:
            raise TranscriptIncomplete("The transcript is not complete yet.")
        text = self._aggregator.text
        if not text:
            raise TranscriptionFailed("There is no transcript to generate documents from.")
        self._store.set_state(self.session_id, "generating")
        self._audit("GENERATION_STARTED", "OK", f"types={','.join(document_types)}")
        outcomes = await self._pipeline.generate_encounter_documents(
            text, patient=self._patient, document_types=document_types, review_required=review_required
        )
        for document_type, outcome in outcomes.items():
            self._store.set_document_outcome(self.session_id, outcome)
            if outcome.ok:
                self._audit("DOCUMENT_DONE", document_type.upper(), f"history={outcome.history_count}")
            else:
                self._audit("DOCUMENT_FAILED", outcome.error_code or "FAILED", f"type={document_type}")
            self._notify(notifications.document_outcome(outcome))
        any_ok = any(o.ok for o in outcomes.values())
        self._store.set_state(self.session_id, "completed" if any_ok else "failed")
        if any_ok and self._patient is not None and self._history_writer is not None:
            await self._save_history(outcomes)
        return outcomes

    async def _save_history(self, outcomes: Dict[DocumentType, DocumentOutcome]) -> None:
        assert self._patient is not None and self._history_writer is not None
        documents = {dt: (o.artifact.text if o.artifact else None) for dt, o in outcomes.items()}
        try:
            await self._history_writer.save(self._patient, documents)
        except HistoryUnavailable as e:
            logger.warning("encounter history not saved code=%s", e.code)
            self._audit("ERROR", e.code, e.message)

    async def finish(
        self, document_types: Sequence[DocumentType] = ENCOUNTER_DOCUMENT_TYPES
    ) -> Dict[DocumentType, DocumentOutcome]:
        await self.stop()
        return await self.generate_documents(document_types)

    async def discard(self, reason: str = "discarded") -> None:
        """Close and drop the encounter's session record, transcript and documents."""
        await self.close()
        if self.session_id is None:
            return
        self._audit("SESSION_DESTROYED", "OK", f"reason={reason}")
        self._store.destroy_session(self.session_id, reason=reason)
        self.session_id = None
        self._aggregator.begin_session("batch")

    async def close(self) -> None:
        await self._batch.stop_periodic()
        if self._streaming is not None:
            await self._streaming.stop()
        if self._level is not None:
            await self._level.aclose()
        await self._engine.cleanup()

    async def __aenter__(self) -> "EncounterRecorder":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def build_encounter_recorder(
    cfg: ScribeConfig,
    *,
    backend: Optional[AudioInputBackend] = None,
    provider: Optional[BatchTranscriptionProvider] = None,
    llm: Optional[CompletionClient] = None,
    history: Optional[PatientHistoryLoader] = None,
    store: Optional[InMemorySessionStore] = None,
    tokens: Optional[TokenCache] = None,
    connect: Optional[ConnectFactory] = None,
    notify: Optional[Callable[[Notification], None]] = None,
) -> EncounterRecorder:
    """Wire an EncounterRecorder from configuration; any collaborator can be passed in."""
    engine = AudioCaptureEngine(cfg, backend=backend)
    aggregator = TranscriptAggregator()
    batch = ChunkedBatchTranscriber(
        provider or build_batch_provider(cfg),
        aggregator,
        language=cfg.STREAM_LANGUAGE,
        timeout_sec=cfg.BATCH_TIMEOUT_SEC,
        interval_sec=cfg.BATCH_INTERVAL_SEC,
    )
    if history is None:
        history = build_history_loader(cfg)
    if tokens is None and cfg.STREAM_ENABLED:
        tokens = TokenCache(RealtimeTokenIssuer(cfg).fetch)
    return EncounterRecorder(
        cfg,
        engine=engine,
        batch=batch,
        aggregator=aggregator,
        pipeline=DocumentGenerationPipeline(cfg, llm or build_completion_client(cfg), history),
        store=store or InMemorySessionStore(ttl_seconds=cfg.SESSION_TTL_SECONDS),
        tokens=tokens,
        connect=connect,
        level=LevelMonitor(engine, fft_size=cfg.LEVEL_FFT_SIZE, publish_hz=cfg.LEVEL_PUBLISH_HZ),
        history_writer=history,
        notify=notify,
    )
