from __future__ import annotations

"""
Extraction agents and orchestrator prompts for clinical documents.

Design intent:
- Each extractor reads the same context and returns one focused section.
- The orchestrator composes a document from labelled extractor outputs plus the
  raw transcript, so a failed extractor degrades the document instead of
  blocking it.
- Prompts are Portuguese: consultations and documents are pt-BR.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from ..internal_core.contracts import DocumentType, ExtractionResult, PatientHistoryRecord


@dataclass(frozen=True)
class ExtractorAgent:
    name: str
    label: str
    instruction: str


EXTRACTORS: Dict[str, ExtractorAgent] = {
    "patient_info": ExtractorAgent(
        name="patient_info",
        label="INFORMAÇÕES DO PACIENTE",
        instruction=(
            "Você é um agente que extrai dados de identificação do paciente de transcrições de consultas. "
            "Liste nome, idade, sexo, profissão e antecedentes pessoais e familiares mencionados. "
            "Inclua apenas informações presentes no texto; escreva 'Não informado' quando faltar."
        ),
    ),
    "symptoms": ExtractorAgent(
        name="symptoms",
        label="SINTOMAS E QUEIXAS",
        instruction=(
            "Você é um agente que extrai a queixa principal e a história da doença atual. "
            "Liste sintomas com início, duração, intensidade, fatores de melhora e piora. "
            "Inclua apenas informações presentes no texto."
        ),
    ),
    "exam_findings": ExtractorAgent(
        name="exam_findings",
        label="ACHADOS DO EXAME",
        instruction=(
            "Você é um agente que extrai achados de exame físico, sinais vitais e resultados de exames "
            "complementares citados na consulta. Inclua apenas informações presentes no texto."
        ),
    ),
    "diagnosis": ExtractorAgent(
        name="diagnosis",
        label="HIPÓTESES DIAGNÓSTICAS",
        instruction=(
            "Você é um agente que identifica hipóteses diagnósticas e diagnósticos confirmados discutidos "
            "na consulta, com CID-10 quando for possível inferir com segurança. Não invente diagnósticos."
        ),
    ),
    "treatment": ExtractorAgent(
        name="treatment",
        label="TRATAMENTO E CONDUTA",
        instruction=(
            "Você é um agente que extrai a conduta: medicamentos (nome, dose, via, frequência, duração), "
            "exames solicitados, orientações e retorno. Inclua apenas o que foi mencionado."
        ),
    ),
    "history": ExtractorAgent(
        name="history",
        label="EVOLUÇÃO EM RELAÇÃO AO HISTÓRICO",
        instruction=(
            "Você é um agente que compara a consulta atual com o histórico do paciente. "
            "Aponte mudanças de quadro, resposta a tratamentos anteriores e problemas recorrentes. "
            "Se não houver histórico, responda 'Sem histórico disponível'."
        ),
    ),
}

_CORE = ("patient_info", "symptoms", "exam_findings", "diagnosis", "treatment")

ROSTERS: Dict[str, tuple[str, ...]] = {
    "clinical_note": _CORE,
    "prescription": ("patient_info", "diagnosis", "treatment"),
    "summary": ("patient_info", "symptoms", "diagnosis", "treatment"),
    "structured_data": _CORE + ("history",),
    "evolution": ("symptoms", "exam_findings", "diagnosis", "treatment", "history"),
    "medical_report": _CORE,
    "enhanced_analysis": _CORE + ("history",),
    "patient_friendly": (),
}

ORCHESTRATOR_PROMPTS: Dict[str, str] = {
    "clinical_note": (
        "Você é um assistente médico especializado em criar notas clínicas estruturadas a partir de "
        "transcrições de consultas médicas. Siga o formato SOAP (Subjetivo, Objetivo, Avaliação, Plano). "
        "Organize de forma clara e profissional, utilizando linguagem médica apropriada. "
        "Inclua apenas informações presentes na transcrição."
    ),
    "prescription": (
        "Você é um assistente médico especializado em formatar prescrições médicas a partir de transcrições "
        "de consultas. Siga o formato padrão de prescrição médica brasileira. Inclua: Nome do medicamento, "
        "Dosagem, Via de administração, Frequência, Duração do tratamento. Inclua apenas medicamentos "
        "mencionados na transcrição."
    ),
    "summary": (
        "Você é um assistente médico especializado em criar resumos concisos de consultas médicas. "
        "Extraia os pontos principais da consulta incluindo: queixa principal, histórico relevante, achados "
        "do exame, diagnóstico e plano de tratamento. Seja objetivo e use linguagem médica apropriada. "
        "Limite o resumo a no máximo 150 palavras."
    ),
    "structured_data": (
        "Você é um assistente que converte consultas médicas em dados estruturados. Responda somente com um "
        "objeto JSON, sem texto adicional, com as chaves: paciente {id, nome, idade}, queixa_principal, "
        "sintomas (lista), exame_fisico, diagnosticos (lista), medicamentos (lista de objetos com nome, "
        "dose, via, frequencia, duracao) e plano. Use null para dados ausentes."
    ),
    "evolution": (
        "Você é um assistente médico que redige a evolução clínica do paciente. Compare a consulta atual com "
        "o histórico, descrevendo mudanças de sintomas, achados, diagnóstico e resposta ao tratamento."
    ),
    "medical_report": (
        "Você é um assistente médico que redige relatórios médicos formais. Inclua identificação, história "
        "clínica, exame físico, hipóteses diagnósticas e conduta, em linguagem técnica e impessoal."
    ),
    "patient_friendly": (
        "Você é um assistente que explica consultas médicas para pacientes. Resuma em linguagem simples, sem "
        "jargão, o que foi encontrado, o diagnóstico e o que o paciente deve fazer a seguir."
    ),
    "enhanced_analysis": (
        "Você é um assistente médico que produz uma análise clínica aprofundada: correlacione sintomas, "
        "achados e histórico, discuta diagnósticos diferenciais e sugira pontos de atenção para o médico."
    ),
}

REVIEW_DISCLAIMER = (
    "---\n"
    "Documento gerado com auxílio de inteligência artificial. "
    "Requer revisão e validação por um profissional de saúde antes do uso clínico."
)


def roster_for(document_type: DocumentType) -> tuple[ExtractorAgent, ...]:
    return tuple(EXTRACTORS[name] for name in ROSTERS[document_type])


def failed_placeholder(agent: ExtractorAgent) -> str:
    return f"[{agent.label}: informação indisponível, extração falhou]"


def format_history_block(history: Sequence[PatientHistoryRecord]) -> str:
    if not history:
        return ""
    lines = ["HISTÓRICO DO PACIENTE (consultas anteriores, mais recente primeiro):"]
    for i, record in enumerate(history, start=1):
        lines.append(f"[{i}] Data: {record.created_at}")
        if record.summary:
            lines.append(f"Resumo: {record.summary.strip()}")
        if record.clinical_note:
            lines.append(f"Nota clínica: {record.clinical_note.strip()}")
        if record.prescription:
            lines.append(f"Prescrição: {record.prescription.strip()}")
    return "\n".join(lines)


def build_context(transcript: str, history: Sequence[PatientHistoryRecord]) -> str:
    block = format_history_block(history)
    parts = [f"TRANSCRIÇÃO DA CONSULTA:\n{transcript.strip()}"]
    if block:
        parts.append(block)
    return "\n\n".join(parts)


def build_orchestrator_input(
    *,
    transcript: str,
    extraction_results: Sequence[ExtractionResult],
    history: Sequence[PatientHistoryRecord],
    additional_instructions: Optional[str] = None,
) -> str:
    parts = []
    for result in extraction_results:
        agent = EXTRACTORS.get(result.agent_name)
        label = agent.label if agent else result.agent_name.upper()
        parts.append(f"{label}:\n{result.content.strip()}")
    parts.append(f"TRANSCRIÇÃO ORIGINAL:\n{transcript.strip()}")
    block = format_history_block(history)
    if block:
        parts.append(block)
    if additional_instructions and additional_instructions.strip():
        parts.append(f"INSTRUÇÕES ADICIONAIS:\n{additional_instructions.strip()}")
    return "\n\n".join(parts)
