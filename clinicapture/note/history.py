from __future__ import annotations

import datetime as _dt
import logging
from abc import ABC, abstractmethod
from threading import RLock
from typing import Any, Dict, List, Mapping, Optional

import httpx
from pydantic import ValidationError

from ..internal_core.config import ScribeConfig
from ..internal_core.contracts import PatientHistoryRecord, PatientRef
from ..internal_core.errors import HistoryUnavailable

logger = logging.getLogger(__name__)

HISTORY_TABLE = "patient_assessments"
MAX_HISTORY_RECORDS = 5


class PatientHistoryLoader(ABC):
    @abstractmethod
    async def load(self, patient: PatientRef, limit: int = MAX_HISTORY_RECORDS) -> List[PatientHistoryRecord]: ...

    @abstractmethod
    async def save(self, patient: PatientRef, documents: Mapping[str, Optional[str]]) -> None: ...


def _patient_keys(patient: PatientRef) -> List[str]:
    keys = []
    if patient.email:
        keys.append(f"email:{patient.email.strip().lower()}")
    if patient.id:
        keys.append(f"id:{patient.id.strip()}")
    return keys


class InMemoryHistoryStore(PatientHistoryLoader):
    def __init__(self) -> None:
        self._lock = RLock()
        self._records: Dict[str, List[PatientHistoryRecord]] = {}

    def add(self, patient: PatientRef, record: PatientHistoryRecord) -> None:
        with self._lock:
            for key in _patient_keys(patient):
                self._records.setdefault(key, []).append(record)

    async def load(self, patient: PatientRef, limit: int = MAX_HISTORY_RECORDS) -> List[PatientHistoryRecord]:
        with self._lock:
            seen: Dict[int, PatientHistoryRecord] = {}
            for key in _patient_keys(patient):
                for record in self._records.get(key, []):
                    seen[id(record)] = record
        ordered = sorted(seen.values(), key=lambda r: r.created_at, reverse=True)
        return ordered[: max(0, int(limit))]

    async def save(self, patient: PatientRef, documents: Mapping[str, Optional[str]]) -> None:
        record = PatientHistoryRecord(
            created_at=_dt.datetime.now(_dt.timezone.utc).isoformat(),
            summary=documents.get("summary"),
            clinical_note=documents.get("clinical_note"),
            prescription=documents.get("prescription"),
        )
        self.add(patient, record)


class SupabaseHistoryLoader(PatientHistoryLoader):
    """Reads and writes `patient_assessments` through the PostgREST endpoint."""

    def __init__(
        self,
        url: str,
        key: str,
        *,
        timeout_sec: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not url or not key:
            raise ValueError("SupabaseHistoryLoader requires a URL and a key")
        self._endpoint = f"{url.rstrip('/')}/rest/v1/{HISTORY_TABLE}"
        self._headers = {"apikey": key, "Authorization": f"Bearer {key}"}
        self._timeout_sec = float(timeout_sec)
        self._client = client

    async def _request(self, method: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                resp = await self._client.request(
                    method, self._endpoint, headers=self._headers, timeout=self._timeout_sec, **kwargs
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout_sec) as client:
                    resp = await client.request(method, self._endpoint, headers=self._headers, **kwargs)
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise HistoryUnavailable(f"History request timed out after {self._timeout_sec}s") from e
        except httpx.HTTPStatusError as e:
            raise HistoryUnavailable(f"History service returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise HistoryUnavailable(f"History request failed: {e}") from e
        return resp

    async def load(self, patient: PatientRef, limit: int = MAX_HISTORY_RECORDS) -> List[PatientHistoryRecord]:
        params = {
            "select": "created_at,summary,clinical_note,prescription",
            "order": "created_at.desc",
            "limit": str(max(1, int(limit))),
        }
        if patient.email:
            params["patient_email"] = f"eq.{patient.email}"
        else:
            params["prontuario_id"] = f"eq.{patient.id}"
        resp = await self._request("GET", params=params)
        try:
            rows = resp.json()
        except ValueError as e:
            raise HistoryUnavailable("History response is not JSON") from e
        if not isinstance(rows, list):
            raise HistoryUnavailable("History response is not a list")
        records: List[PatientHistoryRecord] = []
        for row in rows:
            try:
                records.append(
                    PatientHistoryRecord(
                        created_at=str(row.get("created_at") or ""),
                        summary=row.get("summary"),
                        clinical_note=row.get("clinical_note"),
                        prescription=row.get("prescription"),
                    )
                )
            except (AttributeError, ValidationError):
                logger.warning("history row skipped table=%s", HISTORY_TABLE)
        return records[:limit]

    async def save(self, patient: PatientRef, documents: Mapping[str, Optional[str]]) -> None:
        row = {
            "patient_email": patient.email,
            "prontuario_id": patient.id,
            "clinical_note": documents.get("clinical_note"),
            "prescription": documents.get("prescription"),
            "summary": documents.get("summary"),
            "structured_data": documents.get("structured_data"),
        }
        await self._request("POST", json=row)


def build_history_loader(cfg: ScribeConfig) -> PatientHistoryLoader:
    backend = (cfg.HISTORY_BACKEND or "memory").strip().lower()
    if backend == "memory":
        return InMemoryHistoryStore()
    if backend == "supabase":
        return SupabaseHistoryLoader(cfg.SUPABASE_URL, cfg.SUPABASE_KEY, timeout_sec=cfg.HISTORY_TIMEOUT_SEC)
    raise ValueError(f"Unsupported history backend: {cfg.HISTORY_BACKEND}")
