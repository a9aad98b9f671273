from clinicapture.asr.aggregator import TranscriptAggregator
from clinicapture.internal_core.contracts import TranscriptSegment


def _seg(text: str, *, final: bool, source: str = "streaming") -> TranscriptSegment:
    return TranscriptSegment(text=text, is_final=final, source_timestamp=0.0, source=source)


def test_streaming_finals_append_and_interim_is_replaced() -> None:
    agg = TranscriptAggregator()
    agg.begin_session("streaming")
    agg.on_segment(_seg("Bom", final=False))
    agg.on_segment(_seg("Bom dia", final=False))
    assert agg.interim == "Bom dia"
    agg.on_segment(_seg("Bom dia, doutor.", final=True))
    agg.on_segment(_seg("Estou com febre", final=False))
    assert agg.text == "Bom dia, doutor."
    assert agg.display_text == "Bom dia, doutor. Estou com febre"
    agg.on_segment(_seg("Estou com febre há dois dias.", final=True))
    assert agg.text == "Bom dia, doutor. Estou com febre há dois dias."
    assert agg.interim == ""


def test_batch_final_replaces_text() -> None:
    agg = TranscriptAggregator()
    agg.begin_session("batch")
    agg.on_segment(_seg("primeira versão", final=False, source="batch"))
    agg.on_segment(_seg("texto completo", final=True, source="batch"))
    agg.on_segment(_seg("texto completo revisado", final=True, source="batch"))
    assert agg.text == "texto completo revisado"


def test_completion_fires_once_and_last_final_wins() -> None:
    agg = TranscriptAggregator()
    events = []
    agg.on_complete(events.append)
    agg.begin_session("batch")
    assert agg.complete("batch", "primeiro resultado") is True
    assert agg.complete("batch", "segundo resultado") is False
    assert events == ["primeiro resultado"]
    assert agg.text == "segundo resultado"


def test_final_is_sticky_against_later_interim() -> None:
    agg = TranscriptAggregator()
    agg.begin_session("streaming")
    agg.on_segment(_seg("Paciente relata tosse.", final=True))
    agg.complete("streaming")
    assert agg.on_segment(_seg("ruído", final=False)) is False
    assert agg.display_text == "Paciente relata tosse."


def test_non_owning_source_is_ignored() -> None:
    agg = TranscriptAggregator()
    events = []
    agg.on_complete(events.append)
    agg.begin_session("streaming")
    assert agg.on_segment(_seg("de outro lugar", final=True, source="batch")) is False
    assert agg.complete("batch", "de outro lugar") is False
    assert agg.text == ""
    assert events == []


def test_switch_source_keeps_finals_and_begin_session_resets() -> None:
    agg = TranscriptAggregator()
    events = []
    agg.on_complete(events.append)
    agg.begin_session("streaming")
    agg.on_segment(_seg("parte ao vivo", final=True))
    agg.switch_source("batch")
    assert agg.mode == "batch"
    assert agg.text == "parte ao vivo"
    agg.complete("batch", "transcrição final")
    agg.begin_session("streaming")
    assert agg.text == ""
    assert not agg.completed
    agg.complete("streaming", "nova sessão")
    assert events == ["transcrição final", "nova sessão"]
