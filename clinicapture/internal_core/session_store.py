from __future__ import annotations

import logging
import time
import uuid
from threading import RLock
from typing import Any, Dict, List, Optional

from .contracts import AuditEvent, DocumentOutcome, SessionState

logger = logging.getLogger(__name__)


class InMemorySessionStore:
    def __init__(self, ttl_seconds: int):
        self._ttl_seconds = ttl_seconds
        self._lock = RLock()
        self._sessions: Dict[str, Dict[str, Any]] = {}

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def create_session(self, patient: Optional[Dict[str, Any]] = None) -> str:
        session_id = uuid.uuid4().hex
        now = time.time()
        with self._lock:
            self._sessions[session_id] = {
                "session_id": session_id,
                "created_at": now,
                "updated_at": now,
                "expires_at": now + self._ttl_seconds,
                "state": "idle",
                "patient": patient,
                "transcript": "",
                "transcript_source": None,
                "documents": {},
                "audit_events": [],
                "error": None,
            }
        return session_id

    def _touch(self, session_id: str) -> None:
        now = time.time()
        session = self._sessions[session_id]
        session["updated_at"] = now
        session["expires_at"] = now + self._ttl_seconds

    def _require(self, session_id: str) -> Dict[str, Any]:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session_id: {session_id}")
        return session

    def set_state(self, session_id: str, state: SessionState) -> None:
        with self._lock:
            self._require(session_id)["state"] = state
            self._touch(session_id)

    def set_error(self, session_id: str, message: Optional[str]) -> None:
        with self._lock:
            self._require(session_id)["error"] = message
            self._touch(session_id)

    def set_transcript(self, session_id: str, text: str, source: Optional[str]) -> None:
        with self._lock:
            session = self._require(session_id)
            session["transcript"] = text
            session["transcript_source"] = source
            self._touch(session_id)

    def set_document_outcome(self, session_id: str, outcome: DocumentOutcome) -> None:
        with self._lock:
            self._require(session_id)["documents"][outcome.document_type] = outcome
            self._touch(session_id)

    def append_audit_event(self, session_id: str, event: AuditEvent) -> None:
        with self._lock:
            self._require(session_id)["audit_events"].append(event)
            self._touch(session_id)

    def get_session(self, session_id: str) -> Dict[str, Any]:
        with self._lock:
            session = self._require(session_id)
            return {
                "session_id": session["session_id"],
                "created_at": session["created_at"],
                "updated_at": session["updated_at"],
                "expires_at": session["expires_at"],
                "state": session["state"],
                "patient": session["patient"],
                "transcript": session["transcript"],
                "transcript_source": session["transcript_source"],
                "documents": dict(session["documents"]),
                "audit_events": list(session["audit_events"]),
                "error": session["error"],
            }

    def list_audit_events(self, session_id: str) -> List[AuditEvent]:
        with self._lock:
            return list(self._require(session_id)["audit_events"])

    def destroy_session(self, session_id: str, reason: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info(
            "encounter session destroyed session_id=%s reason=%s state=%s documents=%s",
            session_id,
            reason,
            session["state"],
            len(session["documents"]),
        )
        return True

    def cleanup_expired_sessions(self) -> int:
        now = time.time()
        expired = []
        with self._lock:
            for session_id, session in self._sessions.items():
                if session["expires_at"] <= now:
                    expired.append(session_id)
        for session_id in expired:
            self.destroy_session(session_id, reason="ttl_expired")
        return len(expired)
