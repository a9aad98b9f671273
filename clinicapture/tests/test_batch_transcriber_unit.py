import asyncio

import pytest

from clinicapture.asr.aggregator import TranscriptAggregator
from clinicapture.asr.base import BatchTranscriptionProvider
from clinicapture.asr.batch import ChunkedBatchTranscriber
from clinicapture.asr.mock import MockBatchProvider
from clinicapture.internal_core.errors import EmptyTranscript, TranscriptionFailed


class ScriptedProvider(BatchTranscriptionProvider):
    def __init__(self, results, delay: float = 0.0) -> None:
        self.results = list(results)
        self.delay = delay
        self.calls = []

    async def transcribe(self, audio_b64: str, *, language: str = "pt", timeout_sec: float = 60.0) -> str:
        self.calls.append(audio_b64)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if self.results else "texto"
        if isinstance(result, Exception):
            raise result
        return result

    def name(self) -> str:
        return "scripted"


def _make(provider, **kwargs):
    agg = TranscriptAggregator()
    agg.begin_session("batch")
    completions = []
    agg.on_complete(completions.append)
    return agg, completions, ChunkedBatchTranscriber(provider, agg, **kwargs)


def test_final_success_completes_transcript() -> None:
    provider = ScriptedProvider(["Paciente com dor de cabeça."])
    agg, completions, transcriber = _make(provider)
    text = asyncio.run(transcriber.transcribe(b"RIFFdata", is_final=True))
    assert text == "Paciente com dor de cabeça."
    assert agg.text == text
    assert completions == [text]
    assert provider.calls == ["UklGRmRhdGE="]


def test_interim_updates_only_interim_view() -> None:
    agg, completions, transcriber = _make(ScriptedProvider(["parcial"]))
    asyncio.run(transcriber.transcribe(b"abc", is_final=False))
    assert agg.interim == "parcial"
    assert agg.text == ""
    assert completions == []


def test_final_failure_does_not_advance_and_resubmit_is_safe() -> None:
    provider = ScriptedProvider([TranscriptionFailed("service down"), "texto final", "texto final"])
    agg, completions, transcriber = _make(provider)

    with pytest.raises(TranscriptionFailed):
        asyncio.run(transcriber.transcribe(b"audio", is_final=True))
    assert not agg.completed
    assert agg.text == ""

    asyncio.run(transcriber.transcribe(b"audio", is_final=True))
    asyncio.run(transcriber.transcribe(b"audio", is_final=True))
    assert agg.text == "texto final"
    assert completions == ["texto final"]
    assert len(provider.calls) == 3


def test_empty_final_raises_empty_transcript() -> None:
    agg, completions, transcriber = _make(ScriptedProvider(["   "]))
    with pytest.raises(EmptyTranscript) as exc_info:
        asyncio.run(transcriber.transcribe(b"audio", is_final=True))
    assert exc_info.value.code == "EMPTY_TRANSCRIPT"
    assert completions == []


def test_timeout_maps_to_transcription_failed() -> None:
    agg, _, transcriber = _make(ScriptedProvider(["tarde demais"], delay=1.0), timeout_sec=0.05)
    with pytest.raises(TranscriptionFailed) as exc_info:
        asyncio.run(transcriber.transcribe(b"audio", is_final=True))
    assert exc_info.value.code == "TRANSCRIPTION_TIMEOUT"
    assert not agg.completed


def test_periodic_mode_skips_overlapping_ticks_and_stops() -> None:
    async def scenario():
        provider = ScriptedProvider(["um", "dois", "três", "quatro"], delay=0.12)
        agg, _, transcriber = _make(provider, interval_sec=0.05)
        transcriber.start_periodic(lambda: b"audio so far")
        await asyncio.sleep(0.3)
        await transcriber.stop_periodic()
        calls_at_stop = len(provider.calls)
        await asyncio.sleep(0.15)
        return provider, transcriber, agg, calls_at_stop

    provider, transcriber, agg, calls_at_stop = asyncio.run(scenario())
    assert transcriber.skipped_ticks >= 1
    assert 1 <= calls_at_stop <= 3
    assert len(provider.calls) == calls_at_stop
    assert not transcriber.periodic_running
    assert not agg.completed


def test_periodic_mode_ignores_empty_snapshots() -> None:
    async def scenario():
        provider = ScriptedProvider([])
        _, _, transcriber = _make(provider, interval_sec=0.02)
        transcriber.start_periodic(lambda: None)
        await asyncio.sleep(0.07)
        await transcriber.stop_periodic()
        return provider

    assert asyncio.run(scenario()).calls == []


def test_mock_provider_returns_portuguese_placeholder() -> None:
    agg, completions, transcriber = _make(MockBatchProvider())
    text = asyncio.run(transcriber.transcribe(b"audio", is_final=True))
    assert "transcrição simulada" in text
    assert completions == [text]
