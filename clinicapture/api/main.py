from __future__ import annotations

"""
HTTP surface for transcription and clinical document generation.

Design intent:
- Keep API orchestration thin and typed.
- Delegate domain logic to asr/note modules.
- Collaborators live on `app.state` so tests and deployments can inject them.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from clinicapture.asr import build_batch_provider
from clinicapture.asr.base import BatchTranscriptionProvider
from clinicapture.asr.tokens import RealtimeTokenIssuer
from clinicapture.internal_core.config import ScribeConfig, configure_logging, load_config
from clinicapture.internal_core.contracts import ENCOUNTER_DOCUMENT_TYPES, DocumentOutcome, DocumentType, PatientRef
from clinicapture.internal_core.errors import AuthenticationFailed, TranscriptionFailed
from clinicapture.note.history import PatientHistoryLoader, build_history_loader
from clinicapture.note.llm import CompletionClient, build_completion_client
from clinicapture.note.pipeline import DocumentGenerationPipeline


class TranscribeAudioRequest(BaseModel):
    audio: str = ""
    language: str = Field(default="pt", min_length=2, max_length=16)


class TranscribeAudioResponse(BaseModel):
    text: str


class ClientSecret(BaseModel):
    value: str


class RealtimeTokenResponse(BaseModel):
    client_secret: ClientSecret
    expires_at: int


class ProcessTextRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    mode: str = ""
    review_required: bool = Field(default=False, alias="reviewRequired")
    patient_info: Optional[PatientRef] = Field(default=None, alias="patientInfo")
    additional_instructions: Optional[str] = Field(default=None, alias="additionalInstructions")


class ProcessTextResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    structured_data: Optional[dict[str, Any]] = Field(default=None, alias="structuredData")
    was_generated_with_history: bool = Field(alias="wasGeneratedWithHistory")
    history_count: int = Field(alias="historyCount")


class EncounterDocumentsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    patient_info: Optional[PatientRef] = Field(default=None, alias="patientInfo")
    document_types: list[DocumentType] = Field(
        default_factory=lambda: list(ENCOUNTER_DOCUMENT_TYPES), alias="documentTypes"
    )
    review_required: Optional[bool] = Field(default=None, alias="reviewRequired")


class EncounterDocumentItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool
    text: Optional[str] = None
    structured_data: Optional[dict[str, Any]] = Field(default=None, alias="structuredData")
    error: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    failed_extractors: list[str] = Field(default_factory=list, alias="failedExtractors")
    was_generated_with_history: bool = Field(default=False, alias="wasGeneratedWithHistory")
    history_count: int = Field(default=0, alias="historyCount")


class EncounterDocumentsResponse(BaseModel):
    documents: dict[str, EncounterDocumentItem]


app = FastAPI(title="clinicapture service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class _FixedWindowRateLimiter:
    def __init__(self, max_requests: int, window_sec: float) -> None:
        self._max_requests = int(max_requests)
        self._window_sec = float(window_sec)
        self._lock = threading.Lock()
        self._clients: dict[str, tuple[int, float]] = {}

    def allow(self, client_id: str, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        with self._lock:
            for key, (_, started) in list(self._clients.items()):
                if now - started > self._window_sec:
                    del self._clients[key]
            count, started = self._clients.get(client_id, (0, now))
            if now - started > self._window_sec:
                count, started = 0, now
            count += 1
            self._clients[client_id] = (count, started)
            return count <= self._max_requests


def _get_config() -> ScribeConfig:
    existing = getattr(app.state, "config", None)
    if existing is not None:
        return existing
    created = load_config()
    configure_logging(created)
    setattr(app.state, "config", created)
    return created


def _get_batch_provider() -> BatchTranscriptionProvider:
    existing = getattr(app.state, "batch_provider", None)
    if existing is not None:
        return existing
    created = build_batch_provider(_get_config())
    setattr(app.state, "batch_provider", created)
    return created


def _get_token_issuer() -> Any:
    existing = getattr(app.state, "token_issuer", None)
    if existing is not None:
        return existing
    created = RealtimeTokenIssuer(_get_config())
    setattr(app.state, "token_issuer", created)
    return created


def _get_rate_limiter() -> _FixedWindowRateLimiter:
    existing = getattr(app.state, "token_rate_limiter", None)
    if existing is not None:
        return existing
    cfg = _get_config()
    created = _FixedWindowRateLimiter(cfg.STREAM_TOKEN_RATE_LIMIT, cfg.STREAM_TOKEN_RATE_WINDOW_SEC)
    setattr(app.state, "token_rate_limiter", created)
    return created


def _get_completion_client() -> CompletionClient:
    existing = getattr(app.state, "completion_client", None)
    if existing is not None:
        return existing
    created = build_completion_client(_get_config())
    setattr(app.state, "completion_client", created)
    return created


def _get_history_loader() -> Optional[PatientHistoryLoader]:
    if hasattr(app.state, "history_loader"):
        return app.state.history_loader
    created = build_history_loader(_get_config())
    setattr(app.state, "history_loader", created)
    return created


def _get_pipeline() -> DocumentGenerationPipeline:
    return DocumentGenerationPipeline(_get_config(), _get_completion_client(), _get_history_loader())


def _client_id(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown-client"


def _raise_for_outcome(outcome: DocumentOutcome) -> None:
    if outcome.ok:
        return
    status = 504 if outcome.error_code == "ORCHESTRATION_TIMEOUT" else 502
    raise HTTPException(status_code=status, detail=outcome.error or "Document generation failed.")


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/transcribe-audio", response_model=TranscribeAudioResponse)
async def transcribe_audio(payload: TranscribeAudioRequest) -> TranscribeAudioResponse:
    if not payload.audio:
        raise HTTPException(status_code=400, detail="Missing audio data")
    cfg = _get_config()
    provider = _get_batch_provider()
    try:
        text = await asyncio.wait_for(
            provider.transcribe(payload.audio, language=payload.language, timeout_sec=cfg.BATCH_TIMEOUT_SEC),
            timeout=float(cfg.BATCH_TIMEOUT_SEC),
        )
    except asyncio.TimeoutError as exc:
        raise HTTPException(status_code=504, detail="Transcription timed out.") from exc
    except TranscriptionFailed as exc:
        logger.warning("transcribe-audio failed provider=%s code=%s", provider.name(), exc.code)
        status = 504 if exc.code == "TRANSCRIPTION_TIMEOUT" else 502
        if exc.code == "INVALID_AUDIO":
            status = 400
        raise HTTPException(status_code=status, detail=exc.message) from exc
    return TranscribeAudioResponse(text=text)


@app.post("/realtime-transcription-token", response_model=RealtimeTokenResponse)
async def realtime_transcription_token(request: Request) -> Any:
    client_id = _client_id(request)
    if not _get_rate_limiter().allow(client_id):
        logger.warning("token rate limit exceeded client=%s", client_id)
        return JSONResponse(
            status_code=429,
            content={"error": "Rate limit exceeded. Please try again later."},
            headers={"Retry-After": "60"},
        )
    try:
        data = await _get_token_issuer().issue()
    except AuthenticationFailed as exc:
        logger.warning("token issue failed code=%s", exc.code)
        raise HTTPException(status_code=502, detail=exc.message) from exc
    return RealtimeTokenResponse.model_validate(data)


@app.post("/process-text", response_model=ProcessTextResponse, response_model_by_alias=True)
async def process_text(payload: ProcessTextRequest) -> ProcessTextResponse:
    if not payload.text.strip():
        raise HTTPException(status_code=400, detail="No text provided")
    if not payload.mode:
        raise HTTPException(status_code=400, detail="No processing mode specified")
    pipeline = _get_pipeline()
    try:
        outcome = await pipeline.generate(
            payload.text,
            payload.mode,  # type: ignore[arg-type]
            patient=payload.patient_info,
            review_required=payload.review_required,
            additional_instructions=payload.additional_instructions,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _raise_for_outcome(outcome)
    assert outcome.artifact is not None
    return ProcessTextResponse(
        text=outcome.artifact.text,
        structured_data=outcome.artifact.structured_payload,
        was_generated_with_history=outcome.was_generated_with_history,
        history_count=outcome.history_count,
    )


@app.post("/encounters/documents", response_model=EncounterDocumentsResponse, response_model_by_alias=True)
async def encounter_documents(payload: EncounterDocumentsRequest) -> EncounterDocumentsResponse:
    if not payload.text.strip():
        raise HTTPException(status_code=400, detail="No text provided")
    if not payload.document_types:
        raise HTTPException(status_code=400, detail="documentTypes cannot be empty.")
    outcomes = await _get_pipeline().generate_encounter_documents(
        payload.text,
        patient=payload.patient_info,
        document_types=payload.document_types,
        review_required=payload.review_required,
    )
    documents: dict[str, EncounterDocumentItem] = {}
    for document_type, outcome in outcomes.items():
        documents[document_type] = EncounterDocumentItem(
            ok=outcome.ok,
            text=outcome.artifact.text if outcome.artifact else None,
            structured_data=outcome.artifact.structured_payload if outcome.artifact else None,
            error=outcome.error,
            error_code=outcome.error_code,
            failed_extractors=[r.agent_name for r in outcome.extraction_results if r.failed],
            was_generated_with_history=outcome.was_generated_with_history,
            history_count=outcome.history_count,
        )
    return EncounterDocumentsResponse(documents=documents)
