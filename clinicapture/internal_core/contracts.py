from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

CaptureState = Literal["idle", "acquiring", "recording", "stopped", "error"]

StreamState = Literal["disconnected", "connecting", "connected", "error"]

TranscriptSource = Literal["streaming", "batch"]

SessionState = Literal[
    "idle", "recording", "transcribing", "generating", "completed", "failed"
]

DocumentType = Literal[
    "clinical_note",
    "prescription",
    "summary",
    "structured_data",
    "evolution",
    "medical_report",
    "patient_friendly",
    "enhanced_analysis",
]

ENCOUNTER_DOCUMENT_TYPES: tuple[DocumentType, ...] = (
    "clinical_note",
    "prescription",
    "summary",
    "structured_data",
)


class TranscriptSegment(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str
    is_final: bool
    source_timestamp: float
    source: TranscriptSource
    item_id: Optional[str] = None


class TranscriptionToken(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: str = Field(min_length=1)
    expires_at: float

    def is_expired(self, now: float, skew_sec: float = 5.0) -> bool:
        return self.expires_at - skew_sec <= now


class PatientRef(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="prontuarioId")
    email: Optional[str] = None

    @model_validator(mode="after")
    def _require_one(self) -> "PatientRef":
        if not (self.id or self.email):
            raise ValueError("patientInfo requires id or email")
        return self


class PatientHistoryRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    created_at: str
    summary: Optional[str] = None
    clinical_note: Optional[str] = None
    prescription: Optional[str] = None


class ExtractionResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agent_name: str
    content: str
    failed: bool = False


class StructuredPatient(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    nome: Optional[str] = None
    idade: Optional[Any] = None


class StructuredEncounterRecord(BaseModel):
    """Loose schema for the structured_data document; unknown keys are kept."""

    model_config = ConfigDict(extra="allow")

    paciente: Optional[StructuredPatient] = None
    queixa_principal: Optional[str] = None
    sintomas: Optional[List[Any]] = None
    exame_fisico: Optional[Any] = None
    diagnosticos: Optional[List[Any]] = None
    medicamentos: Optional[List[Any]] = None
    plano: Optional[Any] = None


class DocumentArtifact(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_type: DocumentType
    text: str
    structured_payload: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _payload_only_for_structured(self) -> "DocumentArtifact":
        if self.structured_payload is not None and self.document_type != "structured_data":
            raise ValueError("structured_payload is only allowed for structured_data")
        return self


class DocumentOutcome(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_type: DocumentType
    artifact: Optional[DocumentArtifact] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    extraction_results: List[ExtractionResult] = Field(default_factory=list)
    was_generated_with_history: bool = False
    history_count: int = 0

    @property
    def ok(self) -> bool:
        return self.artifact is not None and self.error is None


AuditEventType = Literal[
    "SESSION_CREATED",
    "RECORDING_STARTED",
    "RECORDING_STOPPED",
    "TRANSCRIPTION_DONE",
    "TRANSCRIPTION_FAILED",
    "STREAM_STATE",
    "GENERATION_STARTED",
    "DOCUMENT_DONE",
    "DOCUMENT_FAILED",
    "SESSION_DESTROYED",
    "ERROR",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None
