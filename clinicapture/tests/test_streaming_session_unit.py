import asyncio
import base64
import json
import time
from dataclasses import replace

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close

from clinicapture.asr.aggregator import TranscriptAggregator
from clinicapture.asr.realtime import StreamingTranscriptionSession
from clinicapture.asr.tokens import TokenCache
from clinicapture.internal_core.config import load_config
from clinicapture.internal_core.contracts import TranscriptionToken
from clinicapture.internal_core.errors import (
    AuthenticationFailed,
    MaxRetriesExceeded,
    StreamingProtocolError,
)


class FakeWebSocket:
    def __init__(self, *, ack: bool = True) -> None:
        self.ack = ack
        self.sent = []
        self.closed_with = None
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        event = json.loads(message)
        self.sent.append(event)
        if self.ack and event["type"] == "transcription_session.update":
            self.push({"type": "transcription_session.created"})

    async def recv(self):
        item = await self._incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed_with is None:
            self.closed_with = code
            frame = Close(code, reason)
            self._incoming.put_nowait(ConnectionClosed(frame, frame))

    def push(self, event: dict) -> None:
        self._incoming.put_nowait(json.dumps(event))

    def drop(self, code: int) -> None:
        rcvd = None if code == 1006 else Close(code, "")
        self._incoming.put_nowait(ConnectionClosed(rcvd, None))

    def types(self):
        return [e["type"] for e in self.sent]


class FakeConnector:
    def __init__(self, plan) -> None:
        self.plan = list(plan)
        self.calls = []

    async def __call__(self, url, headers):
        self.calls.append(dict(headers))
        item = self.plan.pop(0) if self.plan else OSError("connection refused")
        if isinstance(item, BaseException):
            raise item
        return item


class CountingFetcher:
    def __init__(self, error=None) -> None:
        self.count = 0
        self.error = error

    async def __call__(self) -> TranscriptionToken:
        self.count += 1
        if self.error is not None:
            raise self.error
        return TranscriptionToken(value=f"tok{self.count}", expires_at=time.time() + 600)


def _cfg(**overrides):
    base = dict(
        STREAM_ENABLED=True,
        STREAM_RETRY_DELAY_SEC=0.01,
        STREAM_HANDSHAKE_TIMEOUT_SEC=0.2,
        STREAM_MAX_RETRIES=3,
    )
    base.update(overrides)
    return replace(load_config(), **base)


def _session(connector, *, fetcher=None, cfg=None, **kwargs):
    fetcher = fetcher or CountingFetcher()
    agg = TranscriptAggregator()
    agg.begin_session("streaming")
    session = StreamingTranscriptionSession(
        cfg or _cfg(), TokenCache(fetcher), agg, connect=connector, **kwargs
    )
    return session, agg, fetcher


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def test_config_message_precedes_connected_and_buffered_audio_is_flushed() -> None:
    async def scenario():
        ws = FakeWebSocket(ack=False)
        states = []
        session, _, _ = _session(FakeConnector([ws]), on_state=states.append)
        start = asyncio.ensure_future(session.start())
        await _wait_for(lambda: ws.sent)
        assert session.state == "connecting"
        session.send_audio(b"\x01\x00\x02\x00")
        ws.push({"type": "transcription_session.created"})
        await start
        await _wait_for(lambda: len(ws.sent) >= 2)
        await session.stop()
        return ws, states, session

    ws, states, session = asyncio.run(scenario())
    assert ws.types()[0] == "transcription_session.update"
    assert ws.types().count("transcription_session.update") == 1
    update = ws.sent[0]["session"]
    assert update["input_audio_format"] == "pcm16"
    assert update["turn_detection"]["type"] == "server_vad"
    assert update["input_audio_noise_reduction"]["type"] in {"near_field", "far_field"}
    assert ws.sent[1] == {
        "type": "input_audio_buffer.append",
        "audio": base64.b64encode(b"\x01\x00\x02\x00").decode("ascii"),
    }
    assert states == ["connecting", "connected", "disconnected"]
    assert ws.closed_with == 1000


def test_delta_and_completed_events_feed_aggregator() -> None:
    async def scenario():
        ws = FakeWebSocket()
        updates = []
        session, agg, _ = _session(FakeConnector([ws]), on_update=updates.append)
        await session.start()
        ws.push({"type": "input_audio_buffer.speech_started"})
        ws.push({"type": "conversation.item.input_audio_transcription.delta", "item_id": "i1", "delta": "Dor"})
        ws.push({"type": "conversation.item.input_audio_transcription.delta", "item_id": "i1", "delta": " no peito"})
        await _wait_for(lambda: agg.interim == "Dor no peito")
        ws.push(
            {
                "type": "conversation.item.input_audio_transcription.completed",
                "item_id": "i1",
                "transcript": "Dor no peito há três dias.",
            }
        )
        ws.push({"type": "transcription.completed", "text": "Sem febre."})
        await _wait_for(lambda: len(updates) == 2)
        await session.stop()
        return agg, updates

    agg, updates = asyncio.run(scenario())
    assert agg.text == "Dor no peito há três dias. Sem febre."
    assert agg.interim == ""
    assert updates == ["Dor no peito há três dias.", "Dor no peito há três dias. Sem febre."]


def test_repeated_abnormal_close_exhausts_retries_then_errors() -> None:
    async def scenario():
        ws = FakeWebSocket()
        errors = []
        connector = FakeConnector([ws, OSError("down"), OSError("down"), OSError("down")])
        session, _, _ = _session(connector, on_error=errors.append)
        await session.start()
        ws.drop(1006)
        await _wait_for(lambda: session.state == "error")
        return session, connector, errors

    session, connector, errors = asyncio.run(scenario())
    assert len(connector.calls) == 4
    assert isinstance(session.error, MaxRetriesExceeded)
    assert session.error.last_close_code == 1006
    assert errors == [session.error]


def test_reconnect_after_recoverable_close_reuses_token() -> None:
    async def scenario():
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        connector = FakeConnector([ws1, ws2])
        session, _, fetcher = _session(connector)
        await session.start()
        ws1.drop(1011)
        await _wait_for(lambda: session.connections == 2 and session.state == "connected")
        await session.stop()
        return session, connector, fetcher, ws2

    session, connector, fetcher, ws2 = asyncio.run(scenario())
    assert fetcher.count == 1
    assert connector.calls[1]["Authorization"] == "Bearer tok1"
    assert ws2.types().count("transcription_session.update") == 1
    assert session.attempts == 0


def test_token_expiry_close_invalidates_token() -> None:
    async def scenario():
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        connector = FakeConnector([ws1, ws2])
        session, _, fetcher = _session(connector)
        await session.start()
        ws1.drop(3000)
        await _wait_for(lambda: session.connections == 2 and session.state == "connected")
        await session.stop()
        return connector, fetcher

    connector, fetcher = asyncio.run(scenario())
    assert fetcher.count == 2
    assert connector.calls[1]["Authorization"] == "Bearer tok2"


def test_non_retryable_close_goes_to_error_without_reconnect() -> None:
    async def scenario():
        ws = FakeWebSocket()
        connector = FakeConnector([ws, FakeWebSocket()])
        session, _, _ = _session(connector)
        await session.start()
        ws.drop(4001)
        await _wait_for(lambda: session.state == "error")
        return session, connector

    session, connector = asyncio.run(scenario())
    assert isinstance(session.error, StreamingProtocolError)
    assert len(connector.calls) == 1


def test_token_failure_surfaces_authentication_failed() -> None:
    async def scenario():
        connector = FakeConnector([FakeWebSocket()])
        session, _, _ = _session(connector, fetcher=CountingFetcher(error=RuntimeError("401")))
        with pytest.raises(AuthenticationFailed):
            await session.start()
        return session, connector

    session, connector = asyncio.run(scenario())
    assert session.state == "error"
    assert connector.calls == []


def test_handshake_timeout_is_retried_then_fails() -> None:
    async def scenario():
        ws1, ws2 = FakeWebSocket(ack=False), FakeWebSocket(ack=False)
        connector = FakeConnector([ws1, ws2])
        session, _, _ = _session(connector, cfg=_cfg(STREAM_MAX_RETRIES=1, STREAM_HANDSHAKE_TIMEOUT_SEC=0.05))
        with pytest.raises(MaxRetriesExceeded):
            await session.start()
        return session, ws1, ws2

    session, ws1, ws2 = asyncio.run(scenario())
    assert session.state == "error"
    assert ws1.closed_with == 1000
    assert ws2.closed_with == 1000


def test_commit_empty_error_is_benign_but_other_errors_are_fatal() -> None:
    async def scenario():
        ws = FakeWebSocket()
        session, _, _ = _session(FakeConnector([ws]))
        await session.start()
        ws.push(
            {
                "type": "error",
                "error": {"type": "invalid_request_error", "code": "input_audio_buffer_commit_empty", "message": ""},
            }
        )
        await asyncio.sleep(0.02)
        benign_state = session.state
        ws.push({"type": "error", "error": {"type": "server_error", "code": "internal", "message": "boom"}})
        await _wait_for(lambda: session.state == "error")
        return session, benign_state

    session, benign_state = asyncio.run(scenario())
    assert benign_state == "connected"
    assert isinstance(session.error, StreamingProtocolError)


def test_stop_cancels_pending_reconnect_and_detaches_encoder() -> None:
    async def scenario():
        ws = FakeWebSocket()
        connector = FakeConnector([ws])
        session, _, _ = _session(connector, cfg=_cfg(STREAM_RETRY_DELAY_SEC=10.0))
        detached = []
        subscribers = []

        def subscribe(cb):
            subscribers.append(cb)
            return lambda: detached.append(cb)

        session.attach(subscribe)
        await session.start()
        ws.drop(1006)
        await _wait_for(lambda: session.state == "connecting")
        await asyncio.wait_for(session.stop(), timeout=1.0)
        session.send_audio(b"\x00\x00")
        return session, connector, detached, subscribers

    session, connector, detached, subscribers = asyncio.run(scenario())
    assert session.state == "disconnected"
    assert len(connector.calls) == 1
    assert detached == subscribers


def _appended(ws):
    return [base64.b64decode(e["audio"]) for e in ws.sent if e["type"] == "input_audio_buffer.append"]


def test_abnormal_close_mid_recording_reconnects_once_and_keeps_both_connections_text() -> None:
    async def scenario():
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        connector = FakeConnector([ws1, ws2])
        session, agg, _ = _session(connector, cfg=_cfg(STREAM_RETRY_DELAY_SEC=0.05))
        await session.start()
        session.send_audio(b"\x01\x00")
        await _wait_for(lambda: _appended(ws1))
        ws1.push(
            {
                "type": "conversation.item.input_audio_transcription.completed",
                "item_id": "a",
                "transcript": "Paciente com tosse.",
            }
        )
        await _wait_for(lambda: agg.text == "Paciente com tosse.")
        ws1.drop(1006)
        await _wait_for(lambda: session.state == "connecting")
        session.send_audio(b"\x02\x00")
        session.send_audio(b"\x03\x00")
        await _wait_for(lambda: session.state == "connected" and len(_appended(ws2)) == 2)
        ws2.push(
            {
                "type": "conversation.item.input_audio_transcription.completed",
                "item_id": "b",
                "transcript": "Sem febre.",
            }
        )
        await _wait_for(lambda: agg.text.endswith("Sem febre."))
        await session.stop()
        return session, connector, agg, ws1, ws2

    session, connector, agg, ws1, ws2 = asyncio.run(scenario())
    assert len(connector.calls) == 2
    assert session.connections == 2
    assert session.error is None
    assert _appended(ws1) == [b"\x01\x00"]
    assert _appended(ws2) == [b"\x02\x00", b"\x03\x00"]
    assert ws2.types()[0] == "transcription_session.update"
    assert agg.text == "Paciente com tosse. Sem febre."


class DyingWebSocket(FakeWebSocket):
    """Accepts the configuration, then loses the connection on the first audio send."""

    async def send(self, message: str) -> None:
        if json.loads(message)["type"] == "input_audio_buffer.append":
            self.drop(1006)
            raise ConnectionClosed(None, None)
        await super().send(message)


def test_slice_lost_in_a_failed_send_is_resent_after_reconnect() -> None:
    async def scenario():
        ws1, ws2 = DyingWebSocket(), FakeWebSocket()
        session, _, _ = _session(FakeConnector([ws1, ws2]))
        await session.start()
        session.send_audio(b"\x07\x00")
        await _wait_for(lambda: session.connections == 2 and _appended(ws2))
        await session.stop()
        return ws2

    ws2 = asyncio.run(scenario())
    assert _appended(ws2) == [b"\x07\x00"]


def test_service_normal_close_reports_disconnect_without_error() -> None:
    async def scenario():
        ws = FakeWebSocket()
        closed, errors = [], []
        connector = FakeConnector([ws, FakeWebSocket()])
        session, _, _ = _session(connector, on_closed=closed.append, on_error=errors.append)
        await session.start()
        ws.drop(1000)
        await _wait_for(lambda: session.state == "disconnected")
        await session.stop()
        return session, connector, closed, errors

    session, connector, closed, errors = asyncio.run(scenario())
    assert closed == [1000]
    assert errors == []
    assert session.error is None
    assert len(connector.calls) == 1


def test_client_stop_does_not_report_service_close() -> None:
    async def scenario():
        closed = []
        session, _, _ = _session(FakeConnector([FakeWebSocket()]), on_closed=closed.append)
        await session.start()
        await session.stop()
        return closed

    assert asyncio.run(scenario()) == []
