from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from ..internal_core.config import ScribeConfig
from ..internal_core.contracts import (
    ENCOUNTER_DOCUMENT_TYPES,
    DocumentArtifact,
    DocumentOutcome,
    DocumentType,
    ExtractionResult,
    PatientHistoryRecord,
    PatientRef,
)
from ..internal_core.errors import CompletionError, HistoryUnavailable, OrchestrationFailed
from .agents import (
    ORCHESTRATOR_PROMPTS,
    REVIEW_DISCLAIMER,
    ExtractorAgent,
    build_context,
    build_orchestrator_input,
    failed_placeholder,
    roster_for,
)
from .history import PatientHistoryLoader
from .llm import CompletionClient
from .structured import parse_structured_payload

logger = logging.getLogger(__name__)

# (document_type, stage, status); stage is an extractor name or "orchestration".
ProgressCallback = Callable[[str, str, str], None]

EXTRACTOR_MAX_TOKENS = 600


class DocumentGenerationPipeline:
    """Two-stage document generation.

    Stage 1 runs the document type's extractor roster concurrently against one
    context; a failed or timed-out extractor contributes a placeholder. Stage 2
    starts after every extractor settled and makes one orchestrator call.
    """

    def __init__(
        self,
        cfg: ScribeConfig,
        llm: CompletionClient,
        history: Optional[PatientHistoryLoader] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self._cfg = cfg
        self._llm = llm
        self._history = history
        self._on_progress = on_progress

    def _progress(self, document_type: str, stage: str, status: str) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(document_type, stage, status)
        except Exception:
            logger.exception("pipeline progress subscriber failed")

    async def load_history(self, patient: Optional[PatientRef]) -> List[PatientHistoryRecord]:
        cfg = self._cfg
        if patient is None or self._history is None or not cfg.PIPELINE_USE_HISTORY:
            return []
        limit = max(0, min(5, int(cfg.PIPELINE_HISTORY_LIMIT)))
        try:
            records = await asyncio.wait_for(
                self._history.load(patient, limit=limit), timeout=float(cfg.HISTORY_TIMEOUT_SEC)
            )
        except asyncio.TimeoutError:
            logger.warning("history load timed out timeout_sec=%s", cfg.HISTORY_TIMEOUT_SEC)
            return []
        except HistoryUnavailable as e:
            logger.warning("history load failed code=%s", e.code)
            return []
        return list(records)[:limit]

    async def _run_extractor(
        self, document_type: str, agent: ExtractorAgent, context: str
    ) -> ExtractionResult:
        self._progress(document_type, agent.name, "running")
        t0 = time.time()
        try:
            content = await asyncio.wait_for(
                self._llm.complete(system=agent.instruction, user=context, max_tokens=EXTRACTOR_MAX_TOKENS),
                timeout=float(self._cfg.PIPELINE_EXTRACTION_TIMEOUT_SEC),
            )
        except asyncio.TimeoutError:
            logger.warning("extractor timed out doc=%s agent=%s", document_type, agent.name)
            self._progress(document_type, agent.name, "failed")
            return ExtractionResult(agent_name=agent.name, content=failed_placeholder(agent), failed=True)
        except CompletionError as e:
            logger.warning("extractor failed doc=%s agent=%s code=%s", document_type, agent.name, e.code)
            self._progress(document_type, agent.name, "failed")
            return ExtractionResult(agent_name=agent.name, content=failed_placeholder(agent), failed=True)
        except Exception:
            logger.exception("extractor raised doc=%s agent=%s", document_type, agent.name)
            self._progress(document_type, agent.name, "failed")
            return ExtractionResult(agent_name=agent.name, content=failed_placeholder(agent), failed=True)
        logger.info(
            "extractor done doc=%s agent=%s elapsed_ms=%s",
            document_type,
            agent.name,
            int((time.time() - t0) * 1000),
        )
        self._progress(document_type, agent.name, "done")
        return ExtractionResult(agent_name=agent.name, content=content)

    async def run_extractors(self, document_type: DocumentType, context: str) -> List[ExtractionResult]:
        agents = roster_for(document_type)
        if not agents:
            return []
        return list(await asyncio.gather(*(self._run_extractor(document_type, a, context) for a in agents)))

    async def _orchestrate(
        self,
        document_type: DocumentType,
        *,
        transcript: str,
        extraction_results: Sequence[ExtractionResult],
        history: Sequence[PatientHistoryRecord],
        additional_instructions: Optional[str],
    ) -> str:
        user = build_orchestrator_input(
            transcript=transcript,
            extraction_results=extraction_results,
            history=history,
            additional_instructions=additional_instructions,
        )
        timeout = float(self._cfg.PIPELINE_ORCHESTRATION_TIMEOUT_SEC)
        try:
            return await asyncio.wait_for(
                self._llm.complete(
                    system=ORCHESTRATOR_PROMPTS[document_type],
                    user=user,
                    json_mode=document_type == "structured_data",
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise OrchestrationFailed(
                f"Generating {document_type} timed out after {timeout:.0f}s", document_type=document_type
            ) from e
        except CompletionError as e:
            raise OrchestrationFailed(f"Generating {document_type} failed: {e.message}", document_type=document_type) from e
        except Exception as e:
            logger.exception("orchestrator raised doc=%s", document_type)
            raise OrchestrationFailed(
                f"Generating {document_type} failed: {type(e).__name__}", document_type=document_type
            ) from e

    async def generate(
        self,
        transcript: str,
        document_type: DocumentType,
        *,
        patient: Optional[PatientRef] = None,
        review_required: Optional[bool] = None,
        additional_instructions: Optional[str] = None,
        history: Optional[Sequence[PatientHistoryRecord]] = None,
    ) -> DocumentOutcome:
        """Generate one document. Failures are reported on the outcome, not raised."""
        if not (transcript or "").strip():
            raise ValueError("No text provided")
        if document_type not in ORCHESTRATOR_PROMPTS:
            raise ValueError(f"Unsupported processing mode: {document_type}")
        if review_required is None:
            review_required = bool(self._cfg.PIPELINE_REVIEW_REQUIRED)
        if history is None:
            history = await self.load_history(patient)
        history = list(history)[:5]

        t0 = time.time()
        context = build_context(transcript, history)
        extraction_results = await self.run_extractors(document_type, context)

        self._progress(document_type, "orchestration", "running")
        try:
            text = await self._orchestrate(
                document_type,
                transcript=transcript,
                extraction_results=extraction_results,
                history=history,
                additional_instructions=additional_instructions,
            )
        except OrchestrationFailed as e:
            timed_out = isinstance(e.__cause__, asyncio.TimeoutError)
            logger.warning("orchestration failed doc=%s timeout=%s", document_type, timed_out)
            self._progress(document_type, "orchestration", "failed")
            return DocumentOutcome(
                document_type=document_type,
                error=e.message,
                error_code="ORCHESTRATION_TIMEOUT" if timed_out else e.code,
                extraction_results=extraction_results,
                was_generated_with_history=bool(history),
                history_count=len(history),
            )

        payload = parse_structured_payload(text) if document_type == "structured_data" else None
        if review_required:
            text = f"{text.rstrip()}\n\n{REVIEW_DISCLAIMER}"
        self._progress(document_type, "orchestration", "done")
        logger.info(
            "document generated doc=%s extractors=%s failed_extractors=%s history=%s elapsed_ms=%s",
            document_type,
            len(extraction_results),
            sum(1 for r in extraction_results if r.failed),
            len(history),
            int((time.time() - t0) * 1000),
        )
        return DocumentOutcome(
            document_type=document_type,
            artifact=DocumentArtifact(document_type=document_type, text=text, structured_payload=payload),
            extraction_results=extraction_results,
            was_generated_with_history=bool(history),
            history_count=len(history),
        )

    async def generate_encounter_documents(
        self,
        transcript: str,
        *,
        patient: Optional[PatientRef] = None,
        document_types: Sequence[DocumentType] = ENCOUNTER_DOCUMENT_TYPES,
        review_required: Optional[bool] = None,
    ) -> Dict[DocumentType, DocumentOutcome]:
        """Generate each requested type independently; every type gets an outcome."""
        if not (transcript or "").strip():
            raise ValueError("No text provided")
        history = await self.load_history(patient)
        requested = list(dict.fromkeys(document_types))

        def _review_for(document_type: DocumentType) -> bool:
            if review_required is not None:
                return review_required
            # Only the clinical note carries the review disclaimer by default.
            return document_type == "clinical_note" and bool(self._cfg.PIPELINE_REVIEW_REQUIRED)

        async def _one(document_type: DocumentType) -> DocumentOutcome:
            try:
                return await self.generate(
                    transcript,
                    document_type,
                    patient=patient,
                    review_required=_review_for(document_type),
                    history=history,
                )
            except Exception as e:
                logger.exception("document generation raised doc=%s", document_type)
                return DocumentOutcome(
                    document_type=document_type,
                    error=f"Generating {document_type} failed: {type(e).__name__}",
                    error_code=OrchestrationFailed.code,
                    was_generated_with_history=bool(history),
                    history_count=len(history),
                )

        if self._cfg.PIPELINE_DOCS_SEQUENTIAL:
            outcomes = [await _one(dt) for dt in requested]
        else:
            outcomes = list(await asyncio.gather(*(_one(dt) for dt in requested)))
        return {o.document_type: o for o in outcomes}
