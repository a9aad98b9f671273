import asyncio
from dataclasses import replace

from fastapi.testclient import TestClient

from clinicapture.api.main import _FixedWindowRateLimiter, app
from clinicapture.asr.base import BatchTranscriptionProvider
from clinicapture.internal_core.config import load_config
from clinicapture.internal_core.errors import AuthenticationFailed, CompletionError, TranscriptionFailed

_INJECTED = ("config", "batch_provider", "completion_client", "history_loader", "token_issuer", "token_rate_limiter")


class FailingProvider(BatchTranscriptionProvider):
    def __init__(self, error: Exception) -> None:
        self.error = error

    async def transcribe(self, audio_b64, *, language="pt", timeout_sec=60.0):
        raise self.error

    def name(self) -> str:
        return "failing"


class SlowLLM:
    async def complete(self, *, system, user, max_tokens=None, json_mode=False):
        await asyncio.sleep(1.0)
        return "tarde demais"


class BrokenLLM:
    async def complete(self, *, system, user, max_tokens=None, json_mode=False):
        raise CompletionError("model unavailable")


class RejectingIssuer:
    async def issue(self):
        raise AuthenticationFailed("Token request failed with status 401")


class CountingIssuer:
    def __init__(self) -> None:
        self.calls = 0

    async def issue(self):
        self.calls += 1
        return {"client_secret": {"value": "ek"}, "expires_at": 1_900_000_000}


def _inject(**state) -> None:
    app.state.config = replace(
        load_config(),
        PIPELINE_EXTRACTION_TIMEOUT_SEC=0.1,
        PIPELINE_ORCHESTRATION_TIMEOUT_SEC=0.1,
        STREAM_TOKEN_RATE_LIMIT=5,
        STREAM_TOKEN_RATE_WINDOW_SEC=60,
    )
    app.state.history_loader = None
    for key, value in state.items():
        setattr(app.state, key, value)


def _clear() -> None:
    for key in _INJECTED:
        if hasattr(app.state, key):
            delattr(app.state, key)


def test_transcribe_audio_rejects_missing_audio() -> None:
    client = TestClient(app)
    response = client.post("/transcribe-audio", json={})
    assert response.status_code == 400
    assert response.json()["detail"] == "Missing audio data"


def test_transcribe_audio_provider_failure_returns_502() -> None:
    _inject(batch_provider=FailingProvider(TranscriptionFailed("upstream returned 500")))
    try:
        response = TestClient(app).post("/transcribe-audio", json={"audio": "AAAA"})
    finally:
        _clear()
    assert response.status_code == 502
    assert "upstream returned 500" in response.json()["detail"]


def test_transcribe_audio_timeout_returns_504() -> None:
    error = TranscriptionFailed("Transcription timed out", code="TRANSCRIPTION_TIMEOUT")
    _inject(batch_provider=FailingProvider(error))
    try:
        response = TestClient(app).post("/transcribe-audio", json={"audio": "AAAA"})
    finally:
        _clear()
    assert response.status_code == 504


def test_transcribe_audio_invalid_audio_returns_400() -> None:
    _inject(batch_provider=FailingProvider(TranscriptionFailed("not base64", code="INVALID_AUDIO")))
    try:
        response = TestClient(app).post("/transcribe-audio", json={"audio": "%%%"})
    finally:
        _clear()
    assert response.status_code == 400


def test_realtime_token_rate_limit_returns_429_with_retry_after() -> None:
    issuer = CountingIssuer()
    _inject(token_issuer=issuer)
    client = TestClient(app)
    try:
        statuses = [
            client.post("/realtime-transcription-token", headers={"x-forwarded-for": "203.0.113.7"}).status_code
            for _ in range(5)
        ]
        limited = client.post("/realtime-transcription-token", headers={"x-forwarded-for": "203.0.113.7"})
        other = client.post("/realtime-transcription-token", headers={"x-real-ip": "198.51.100.2"})
    finally:
        _clear()
    assert statuses == [200] * 5
    assert limited.status_code == 429
    assert limited.headers["Retry-After"] == "60"
    assert limited.json() == {"error": "Rate limit exceeded. Please try again later."}
    assert other.status_code == 200
    assert issuer.calls == 6


def test_rate_limiter_window_resets() -> None:
    limiter = _FixedWindowRateLimiter(2, 60)
    assert limiter.allow("a", now=0.0)
    assert limiter.allow("a", now=1.0)
    assert not limiter.allow("a", now=2.0)
    assert limiter.allow("a", now=61.0)


def test_realtime_token_issuer_failure_returns_502() -> None:
    _inject(token_issuer=RejectingIssuer())
    try:
        response = TestClient(app).post("/realtime-transcription-token")
    finally:
        _clear()
    assert response.status_code == 502
    assert "401" in response.json()["detail"]


def test_process_text_requires_text_and_mode() -> None:
    _inject(completion_client=BrokenLLM())
    client = TestClient(app)
    try:
        no_text = client.post("/process-text", json={"text": " ", "mode": "summary"})
        no_mode = client.post("/process-text", json={"text": "Paciente com tosse."})
        bad_mode = client.post("/process-text", json={"text": "Paciente com tosse.", "mode": "discharge"})
    finally:
        _clear()
    assert no_text.status_code == 400
    assert no_text.json()["detail"] == "No text provided"
    assert no_mode.status_code == 400
    assert no_mode.json()["detail"] == "No processing mode specified"
    assert bad_mode.status_code == 400


def test_process_text_orchestration_timeout_returns_504() -> None:
    _inject(completion_client=SlowLLM())
    try:
        response = TestClient(app).post("/process-text", json={"text": "Paciente com tosse.", "mode": "patient_friendly"})
    finally:
        _clear()
    assert response.status_code == 504


def test_process_text_orchestration_failure_returns_502() -> None:
    _inject(completion_client=BrokenLLM())
    try:
        response = TestClient(app).post("/process-text", json={"text": "Paciente com tosse.", "mode": "summary"})
    finally:
        _clear()
    assert response.status_code == 502
    assert "model unavailable" in response.json()["detail"]


def test_encounter_documents_rejects_empty_text() -> None:
    _inject(completion_client=BrokenLLM())
    try:
        response = TestClient(app).post("/encounters/documents", json={"text": ""})
    finally:
        _clear()
    assert response.status_code == 400
