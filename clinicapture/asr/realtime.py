from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from ..capture.audio_utils import encode_base64
from ..internal_core.config import ScribeConfig
from ..internal_core.contracts import StreamState, TranscriptSegment
from ..internal_core.errors import (
    AuthenticationFailed,
    HandshakeFailed,
    MaxRetriesExceeded,
    ScribeError,
    StreamingProtocolError,
)
from .aggregator import TranscriptAggregator
from .protocol import (
    ACK_EVENTS,
    COMPLETED_EVENTS,
    DELTA_EVENTS,
    SPEECH_EVENTS,
    audio_append_message,
    describe_error,
    is_benign_error,
    session_update_message,
)
from .tokens import TokenCache

logger = logging.getLogger(__name__)

ConnectFactory = Callable[[str, Dict[str, str]], Awaitable[Any]]

TOKEN_EXPIRED_CLOSE_CODE = 3000
ABNORMAL_CLOSE_CODE = 1006
NORMAL_CLOSE_CODE = 1000


async def default_connect(url: str, headers: Dict[str, str]) -> Any:
    return await ws_connect(url, additional_headers=headers, max_size=2**22, open_timeout=15)


def _close_code(exc: ConnectionClosed) -> int:
    if exc.rcvd is not None:
        return int(exc.rcvd.code)
    return ABNORMAL_CLOSE_CODE


class StreamingTranscriptionSession:
    """Live transcription over one websocket at a time.

    States: disconnected -> connecting -> connected -> (error | disconnected).
    The configuration message goes out once per connection before the session
    counts as connected. PCM16 slices are queued while connecting and flushed
    once the service acknowledges the configuration. Abnormal closes with a
    retryable code reconnect after a fixed delay, up to `STREAM_MAX_RETRIES`
    consecutive attempts.
    """

    def __init__(
        self,
        cfg: ScribeConfig,
        tokens: TokenCache,
        aggregator: TranscriptAggregator,
        *,
        connect: Optional[ConnectFactory] = None,
        on_update: Optional[Callable[[str], None]] = None,
        on_state: Optional[Callable[[StreamState], None]] = None,
        on_error: Optional[Callable[[ScribeError], None]] = None,
        on_closed: Optional[Callable[[int], None]] = None,
        max_buffered_slices: int = 240,
    ) -> None:
        self._cfg = cfg
        self._tokens = tokens
        self._aggregator = aggregator
        self._connect = connect or default_connect
        self._on_update = on_update
        self._on_state = on_state
        self._on_error = on_error
        self._on_closed = on_closed
        self._outbox: asyncio.Queue[bytes] = asyncio.Queue(maxsize=max(1, int(max_buffered_slices)))
        self._in_flight: Optional[bytes] = None
        self._state: StreamState = "disconnected"
        self._ws: Any = None
        self._runner: Optional[asyncio.Task] = None
        self._first_outcome: Optional[asyncio.Future] = None
        self._detach: Optional[Callable[[], None]] = None
        self._stopping = False
        self._interim_by_item: Dict[str, str] = {}
        self.attempts = 0
        self.connections = 0
        self.last_close_code: Optional[int] = None
        self.error: Optional[ScribeError] = None

    @property
    def state(self) -> StreamState:
        return self._state

    def _set_state(self, state: StreamState) -> None:
        if state == self._state:
            return
        logger.info("stream state from=%s to=%s attempts=%s", self._state, state, self.attempts)
        self._state = state
        if self._on_state is not None:
            try:
                self._on_state(state)
            except Exception:
                logger.exception("stream state subscriber failed")

    def attach(self, subscribe_slices: Callable[[Callable[[bytes], None]], Callable[[], None]]) -> None:
        if self._detach is None:
            self._detach = subscribe_slices(self.send_audio)

    def send_audio(self, pcm16: bytes) -> None:
        if self._state not in ("connecting", "connected") or not pcm16:
            return
        if self._outbox.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self._outbox.get_nowait()
            logger.warning("stream outbox full, oldest slice dropped")
        self._outbox.put_nowait(pcm16)

    async def start(self) -> None:
        """Connect and return once the service acknowledged the configuration."""
        if self._state in ("connecting", "connected") and self._first_outcome is not None:
            await asyncio.shield(self._first_outcome)
            return
        loop = asyncio.get_running_loop()
        self._stopping = False
        self.attempts = 0
        self.error = None
        self._interim_by_item = {}
        self._first_outcome = loop.create_future()
        self._set_state("connecting")
        self._runner = loop.create_task(self._run())
        await asyncio.shield(self._first_outcome)

    async def _run(self) -> None:
        cfg = self._cfg
        retryable = cfg.STREAM_RETRYABLE_CLOSE_CODES
        while not self._stopping:
            try:
                token = await self._tokens.get()
            except AuthenticationFailed as e:
                await self._fail(e)
                return
            headers = {"Authorization": f"Bearer {token.value}", "OpenAI-Beta": "realtime=v1"}
            close_code: Optional[int] = None
            try:
                ws = await self._connect(cfg.STREAM_URL, headers)
            except InvalidStatus as e:
                status = e.response.status_code
                logger.warning("stream connect rejected http_status=%s", status)
                if status in (401, 403):
                    self._tokens.invalidate()
                close_code = ABNORMAL_CLOSE_CODE
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning("stream connect failed error=%s", type(e).__name__)
                close_code = ABNORMAL_CLOSE_CODE
            else:
                self._ws = ws
                self.connections += 1
                try:
                    await ws.send(session_update_message(cfg))
                    await self._await_ack(ws)
                    self.attempts = 0
                    self._set_state("connected")
                    if self._first_outcome is not None and not self._first_outcome.done():
                        self._first_outcome.set_result(None)
                    await self._pump(ws)
                except ConnectionClosed as e:
                    close_code = _close_code(e)
                except HandshakeFailed as e:
                    logger.warning("stream handshake failed detail=%s", e.message)
                    close_code = ABNORMAL_CLOSE_CODE
                    await self._close_ws(ws, NORMAL_CLOSE_CODE)
                except StreamingProtocolError as e:
                    await self._close_ws(ws, NORMAL_CLOSE_CODE)
                    await self._fail(e)
                    return
                finally:
                    self._ws = None
            if self._stopping:
                break
            self.last_close_code = close_code
            if close_code == NORMAL_CLOSE_CODE:
                logger.info("stream closed by service code=%s", close_code)
                break
            if close_code not in retryable:
                await self._fail(StreamingProtocolError(f"Connection closed with code {close_code}"))
                return
            if close_code == TOKEN_EXPIRED_CLOSE_CODE:
                self._tokens.invalidate()
            self.attempts += 1
            if self.attempts > int(cfg.STREAM_MAX_RETRIES):
                await self._fail(
                    MaxRetriesExceeded(
                        f"Live transcription lost after {cfg.STREAM_MAX_RETRIES} reconnect attempts",
                        attempts=self.attempts - 1,
                        last_close_code=close_code,
                    )
                )
                return
            self._set_state("connecting")
            logger.info(
                "stream reconnect attempt=%s/%s close_code=%s", self.attempts, cfg.STREAM_MAX_RETRIES, close_code
            )
            await asyncio.sleep(float(cfg.STREAM_RETRY_DELAY_SEC))
        self._set_state("disconnected")
        if self._first_outcome is not None and not self._first_outcome.done():
            self._first_outcome.set_result(None)
        elif not self._stopping and self._on_closed is not None:
            try:
                self._on_closed(self.last_close_code or NORMAL_CLOSE_CODE)
            except Exception:
                logger.exception("stream close subscriber failed")

    async def _await_ack(self, ws: Any) -> None:
        async def _wait() -> None:
            while True:
                event = self._decode(await ws.recv())
                etype = event.get("type")
                if etype in ACK_EVENTS:
                    return
                if etype == "error":
                    self._handle_error_event(event)
                else:
                    logger.debug("stream pre-ack event ignored type=%s", etype)

        try:
            await asyncio.wait_for(_wait(), timeout=float(self._cfg.STREAM_HANDSHAKE_TIMEOUT_SEC))
        except asyncio.TimeoutError as e:
            raise HandshakeFailed(
                f"No session acknowledgement within {self._cfg.STREAM_HANDSHAKE_TIMEOUT_SEC}s"
            ) from e

    async def _pump(self, ws: Any) -> None:
        sender = asyncio.get_running_loop().create_task(self._send_loop(ws))
        try:
            while True:
                self._handle_event(self._decode(await ws.recv()))
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, ConnectionClosed):
                await sender

    async def _send_loop(self, ws: Any) -> None:
        # A slice whose send did not complete is resent first on the next connection.
        while True:
            if self._in_flight is None:
                self._in_flight = await self._outbox.get()
            await ws.send(audio_append_message(encode_base64(self._in_flight)))
            self._in_flight = None

    def _decode(self, raw: Any) -> Dict[str, Any]:
        try:
            event = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise StreamingProtocolError("Service sent a frame that is not JSON") from e
        if not isinstance(event, dict):
            raise StreamingProtocolError("Service sent a JSON frame that is not an object")
        return event

    def _handle_error_event(self, event: Dict[str, Any]) -> None:
        if is_benign_error(event):
            logger.debug("stream benign error detail=%s", describe_error(event))
            return
        raise StreamingProtocolError(f"Service error {describe_error(event)}")

    def _handle_event(self, event: Dict[str, Any]) -> None:
        etype = event.get("type")
        if etype in DELTA_EVENTS:
            item_id = str(event.get("item_id") or "")
            interim = self._interim_by_item.get(item_id, "") + str(event.get("delta") or "")
            self._interim_by_item[item_id] = interim
            self._aggregator.on_segment(
                TranscriptSegment(
                    text=interim,
                    is_final=False,
                    source_timestamp=time.time(),
                    source="streaming",
                    item_id=item_id or None,
                )
            )
        elif etype in COMPLETED_EVENTS:
            item_id = str(event.get("item_id") or "")
            self._interim_by_item.pop(item_id, None)
            text = str(event.get("transcript") or event.get("text") or "")
            accepted = self._aggregator.on_segment(
                TranscriptSegment(
                    text=text,
                    is_final=True,
                    source_timestamp=time.time(),
                    source="streaming",
                    item_id=item_id or None,
                )
            )
            if accepted and self._on_update is not None:
                self._on_update(self._aggregator.text)
        elif etype == "error":
            self._handle_error_event(event)
        elif etype in SPEECH_EVENTS or etype in ACK_EVENTS:
            logger.debug("stream event type=%s", etype)
        else:
            logger.debug("stream event ignored type=%s", etype)

    async def _close_ws(self, ws: Any, code: int) -> None:
        try:
            await ws.close(code=code, reason="client stop" if code == NORMAL_CLOSE_CODE else "")
        except Exception:
            logger.debug("stream close raised", exc_info=True)

    async def _fail(self, err: ScribeError) -> None:
        self.error = err
        logger.warning("stream failed code=%s", err.code)
        self._set_state("error")
        if self._first_outcome is not None and not self._first_outcome.done():
            self._first_outcome.set_exception(err)
        elif self._on_error is not None:
            self._on_error(err)

    async def stop(self) -> None:
        """Close with 1000, detach from the encoder and cancel any pending reconnect."""
        self._stopping = True
        if self._detach is not None:
            self._detach()
            self._detach = None
        ws = self._ws
        if ws is not None:
            await self._close_ws(ws, NORMAL_CLOSE_CODE)
        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        self._ws = None
        self._in_flight = None
        while not self._outbox.empty():
            self._outbox.get_nowait()
        if self._first_outcome is not None and not self._first_outcome.done():
            self._first_outcome.set_result(None)
        self._set_state("disconnected")
