from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from ..internal_core.contracts import DocumentOutcome, StreamState
from ..internal_core.errors import OrchestrationFailed, ScribeError

NotificationLevel = Literal["info", "success", "warning", "error"]

DOCUMENT_TITLES = {
    "clinical_note": "Nota clínica",
    "prescription": "Prescrição",
    "summary": "Resumo",
    "structured_data": "Dados estruturados",
    "evolution": "Evolução",
    "medical_report": "Relatório médico",
    "patient_friendly": "Explicação ao paciente",
    "enhanced_analysis": "Análise aprofundada",
}


@dataclass(frozen=True)
class Notification:
    level: NotificationLevel
    title: str
    message: str
    code: str = ""
    retry_hint: str = ""


def from_error(err: ScribeError, *, title: str = "Erro") -> Notification:
    return Notification(level="error", title=title, message=err.message, code=err.code, retry_hint=err.retry_hint)


def transcription_complete(text: str) -> Notification:
    words = len(text.split())
    return Notification(level="success", title="Transcrição concluída", message=f"{words} palavras transcritas.")


def stream_fallback(err: ScribeError) -> Notification:
    return Notification(
        level="warning",
        title="Transcrição em tempo real indisponível",
        message=f"{err.message}. A gravação continua e será transcrita ao final.",
        code=err.code,
        retry_hint=err.retry_hint,
    )


def stream_state(state: StreamState) -> Notification:
    messages = {
        "connecting": ("info", "Conectando à transcrição em tempo real."),
        "connected": ("success", "Transcrição em tempo real conectada."),
        "disconnected": ("info", "Transcrição em tempo real encerrada."),
        "error": ("error", "Falha na transcrição em tempo real."),
    }
    level, message = messages[state]
    return Notification(level=level, title="Transcrição em tempo real", message=message)  # type: ignore[arg-type]


def document_outcome(outcome: DocumentOutcome) -> Notification:
    title = DOCUMENT_TITLES.get(outcome.document_type, outcome.document_type)
    if outcome.ok:
        failed = sum(1 for r in outcome.extraction_results if r.failed)
        message = "Documento gerado."
        if outcome.was_generated_with_history:
            message = f"Documento gerado com {outcome.history_count} consulta(s) anterior(es) no contexto."
        if failed:
            return Notification(
                level="warning",
                title=title,
                message=f"{message} {failed} agente(s) de extração falharam; revise o conteúdo.",
            )
        return Notification(level="success", title=title, message=message)
    return Notification(
        level="error",
        title=title,
        message=outcome.error or "Falha ao gerar o documento.",
        code=outcome.error_code or "",
        retry_hint=OrchestrationFailed.retry_hint,
    )


def stream_closed() -> Notification:
    return Notification(
        level="warning",
        title="Transcrição em tempo real encerrada",
        message="O serviço encerrou a transcrição em tempo real. A gravação continua e será transcrita ao final.",
    )
