import asyncio
import json

import httpx
import pytest

from clinicapture.internal_core.contracts import PatientHistoryRecord, PatientRef
from clinicapture.internal_core.errors import HistoryUnavailable
from clinicapture.note.history import InMemoryHistoryStore, SupabaseHistoryLoader


def _loader(handler) -> SupabaseHistoryLoader:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SupabaseHistoryLoader("https://db.example.supabase.co/", "anon-key", client=client)


def test_in_memory_store_matches_email_or_record_id() -> None:
    store = InMemoryHistoryStore()
    by_email = PatientRef(email="Maria@Example.com")
    store.add(by_email, PatientHistoryRecord(created_at="2026-03-01T09:00:00Z", summary="retorno"))
    store.add(PatientRef(prontuarioId="P-9"), PatientHistoryRecord(created_at="2026-02-01T09:00:00Z"))

    found = asyncio.run(store.load(PatientRef(email="maria@example.com")))
    assert [r.summary for r in found] == ["retorno"]
    assert asyncio.run(store.load(PatientRef(prontuarioId="P-9"), limit=0)) == []


def test_in_memory_store_save_records_documents() -> None:
    store = InMemoryHistoryStore()
    patient = PatientRef(prontuarioId="P-1")
    asyncio.run(store.save(patient, {"summary": "resumo", "clinical_note": "nota", "prescription": None}))
    [record] = asyncio.run(store.load(patient))
    assert record.summary == "resumo"
    assert record.clinical_note == "nota"
    assert record.prescription is None


def test_supabase_loader_queries_newest_first_by_email() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["apikey"] = request.headers["apikey"]
        return httpx.Response(
            200,
            json=[
                {"created_at": "2026-03-02T10:00:00Z", "summary": "segunda", "clinical_note": None, "prescription": None},
                {"created_at": "2026-03-01T10:00:00Z", "summary": "primeira", "clinical_note": "nota", "prescription": "rx"},
            ],
        )

    records = asyncio.run(_loader(handler).load(PatientRef(email="ana@example.com"), limit=5))

    assert seen["path"] == "/rest/v1/patient_assessments"
    assert seen["params"]["patient_email"] == "eq.ana@example.com"
    assert seen["params"]["order"] == "created_at.desc"
    assert seen["params"]["limit"] == "5"
    assert seen["apikey"] == "anon-key"
    assert [r.summary for r in records] == ["segunda", "primeira"]


def test_supabase_loader_falls_back_to_record_id() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(dict(request.url.params))
        return httpx.Response(200, json=[])

    assert asyncio.run(_loader(handler).load(PatientRef(prontuarioId="P-42"))) == []
    assert seen["prontuario_id"] == "eq.P-42"
    assert "patient_email" not in seen


def test_supabase_loader_errors_become_history_unavailable() -> None:
    loader = _loader(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(HistoryUnavailable, match="500"):
        asyncio.run(loader.load(PatientRef(email="ana@example.com")))


def test_supabase_loader_rejects_non_list_body() -> None:
    loader = _loader(lambda request: httpx.Response(200, json={"message": "unexpected"}))
    with pytest.raises(HistoryUnavailable):
        asyncio.run(loader.load(PatientRef(email="ana@example.com")))


def test_supabase_save_posts_row() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        return httpx.Response(201)

    asyncio.run(
        _loader(handler).save(PatientRef(email="ana@example.com", prontuarioId="P-1"), {"summary": "resumo"})
    )
    assert seen["method"] == "POST"
    assert seen["body"]["patient_email"] == "ana@example.com"
    assert seen["body"]["prontuario_id"] == "P-1"
    assert seen["body"]["summary"] == "resumo"
    assert seen["body"]["clinical_note"] is None


def test_supabase_loader_requires_credentials() -> None:
    with pytest.raises(ValueError):
        SupabaseHistoryLoader("", "")
