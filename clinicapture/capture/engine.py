from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import numpy as np

from ..internal_core.config import ScribeConfig
from ..internal_core.contracts import CaptureState
from ..internal_core.errors import DeviceUnavailable, NoAudioCaptured, PermissionDenied, ScribeError
from .audio_utils import (
    apply_noise_gate,
    build_wav_container,
    float32_to_pcm16,
    normalize_min_rms,
    to_mono_float32,
)

logger = logging.getLogger(__name__)

FrameCallback = Callable[[np.ndarray], None]
SliceCallback = Callable[[bytes], None]
TeardownCallback = Callable[[], None]


@dataclass
class AudioSession:
    sample_rate: int
    channels: int = 1
    encoding: str = "pcm16"
    state: CaptureState = "acquiring"
    started_at: float = 0.0
    chunks: List[bytes] = field(default_factory=list)
    pending: List[np.ndarray] = field(default_factory=list)

    @property
    def captured_bytes(self) -> int:
        return sum(len(c) for c in self.chunks)


class AudioInputBackend(ABC):
    """Opens an input device and pushes float32 frames to `on_frames`.

    `on_frames` may be called from any thread.
    """

    @abstractmethod
    def open(
        self,
        *,
        sample_rate: int,
        channels: int,
        device: Optional[int],
        on_frames: FrameCallback,
    ) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


def _is_permission_error(message: str) -> bool:
    lowered = message.lower()
    return "permission" in lowered or "denied" in lowered or "not authorized" in lowered


ECHO_CANCEL_DEVICE_HINTS = ("echo-cancel", "echo cancel", "echocancel", "aec")


def find_echo_cancel_device(devices) -> Optional[int]:
    """Index of an input device the host audio stack runs echo cancellation on."""
    for index, dev in enumerate(devices):
        name = str(dev.get("name", "")).lower()
        if int(dev.get("max_input_channels", 0)) > 0 and any(h in name for h in ECHO_CANCEL_DEVICE_HINTS):
            return index
    return None


class SoundDeviceBackend(AudioInputBackend):
    def __init__(self, blocksize: int = 0, *, echo_cancellation: bool = False) -> None:
        self._blocksize = blocksize
        self._echo_cancellation = echo_cancellation
        self._stream: Any = None

    @property
    def echo_cancellation(self) -> bool:
        return self._echo_cancellation

    def open(
        self,
        *,
        sample_rate: int,
        channels: int,
        device: Optional[int],
        on_frames: FrameCallback,
    ) -> None:
        try:
            import sounddevice as sd  # type: ignore
        except (ImportError, OSError) as e:
            raise DeviceUnavailable(f"Audio input library unavailable: {e}") from e

        def _callback(indata, frames, time_info, status) -> None:  # noqa: ARG001
            if status:
                logger.debug("capture stream status=%s", status)
            on_frames(indata.copy())

        try:
            if device is None and self._echo_cancellation:
                device = find_echo_cancel_device(sd.query_devices())
                if device is None:
                    logger.info("no echo-cancelling input device found, using default input")
                else:
                    logger.info("capture using echo-cancelling input device=%s", device)
            sd.check_input_settings(device=device, channels=channels, samplerate=sample_rate, dtype="float32")
            stream = sd.InputStream(
                samplerate=sample_rate,
                channels=channels,
                dtype="float32",
                device=device,
                blocksize=self._blocksize,
                callback=_callback,
            )
            stream.start()
        except sd.PortAudioError as e:
            if _is_permission_error(str(e)):
                raise PermissionDenied(f"Microphone access was refused: {e}") from e
            raise DeviceUnavailable(f"No usable input device: {e}") from e
        except ValueError as e:
            raise DeviceUnavailable(f"No usable input device: {e}") from e
        self._stream = stream

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()


class AudioCaptureEngine:
    """Owns the microphone for one recording at a time.

    Frames are gated and gain-normalised on the event loop, fanned out to frame
    subscribers, and sliced into PCM16 every `CAPTURE_SLICE_INTERVAL_SEC`.
    `stop()` returns a WAV container of everything captured.
    """

    def __init__(self, cfg: ScribeConfig, backend: Optional[AudioInputBackend] = None) -> None:
        self._cfg = cfg
        self._backend = backend or SoundDeviceBackend(echo_cancellation=bool(cfg.CAPTURE_ECHO_CANCELLATION))
        self._state: CaptureState = "idle"
        self._session: Optional[AudioSession] = None
        self._start_task: Optional[asyncio.Future] = None
        self._slice_task: Optional[asyncio.Task] = None
        self._device_open = False
        self._graph_live = False
        self._frame_subs: List[FrameCallback] = []
        self._slice_subs: List[SliceCallback] = []
        self._container_subs: List[SliceCallback] = []
        self._teardown_subs: List[TeardownCallback] = []

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def session(self) -> Optional[AudioSession]:
        return self._session

    @property
    def backend(self) -> AudioInputBackend:
        return self._backend

    @property
    def sample_rate(self) -> int:
        return int(self._cfg.CAPTURE_SAMPLE_RATE)

    def _subscribe(self, subs: list, cb) -> Callable[[], None]:
        subs.append(cb)

        def _unsubscribe() -> None:
            if cb in subs:
                subs.remove(cb)

        return _unsubscribe

    def subscribe_frames(self, cb: FrameCallback) -> Callable[[], None]:
        return self._subscribe(self._frame_subs, cb)

    def subscribe_slices(self, cb: SliceCallback) -> Callable[[], None]:
        return self._subscribe(self._slice_subs, cb)

    def subscribe_container(self, cb: SliceCallback) -> Callable[[], None]:
        return self._subscribe(self._container_subs, cb)

    def subscribe_teardown(self, cb: TeardownCallback) -> Callable[[], None]:
        return self._subscribe(self._teardown_subs, cb)

    async def start(self) -> None:
        if self._state == "recording":
            return
        if self._start_task is not None and not self._start_task.done():
            await asyncio.shield(self._start_task)
            return
        task = asyncio.ensure_future(self._acquire())
        self._start_task = task
        try:
            await task
        finally:
            if self._start_task is task:
                self._start_task = None

    async def _acquire(self) -> None:
        cfg = self._cfg
        loop = asyncio.get_running_loop()
        self._state = "acquiring"
        session = AudioSession(sample_rate=int(cfg.CAPTURE_SAMPLE_RATE))
        self._session = session

        def _on_frames(frames: np.ndarray) -> None:
            loop.call_soon_threadsafe(self._on_frames, session, frames)

        t0 = time.time()
        try:
            await asyncio.to_thread(
                self._backend.open,
                sample_rate=int(cfg.CAPTURE_SAMPLE_RATE),
                channels=int(cfg.CAPTURE_CHANNEL_COUNT),
                device=cfg.CAPTURE_DEVICE,
                on_frames=_on_frames,
            )
        except ScribeError as e:
            self._state = "error"
            session.state = "error"
            self._session = None
            logger.warning("capture acquire failed code=%s", e.code)
            raise
        self._device_open = True
        self._graph_live = True
        session.state = "recording"
        session.started_at = time.time()
        self._state = "recording"
        self._slice_task = asyncio.create_task(self._slice_loop(session))
        logger.info(
            "capture started sample_rate=%s channels=%s acquire_ms=%s",
            session.sample_rate,
            cfg.CAPTURE_CHANNEL_COUNT,
            int((time.time() - t0) * 1000),
        )

    def _on_frames(self, session: AudioSession, frames: np.ndarray) -> None:
        if session is not self._session or session.state != "recording":
            return
        cfg = self._cfg
        audio = to_mono_float32(frames)
        if cfg.CAPTURE_NOISE_SUPPRESSION:
            audio = apply_noise_gate(audio, float(cfg.CAPTURE_NOISE_GATE_RMS))
        if cfg.CAPTURE_AUTO_GAIN_CONTROL:
            audio = normalize_min_rms(audio, float(cfg.CAPTURE_TARGET_MIN_RMS))
        session.pending.append(audio)
        for cb in list(self._frame_subs):
            try:
                cb(audio)
            except Exception:
                logger.exception("capture frame subscriber failed")

    async def _slice_loop(self, session: AudioSession) -> None:
        interval = max(0.05, float(self._cfg.CAPTURE_SLICE_INTERVAL_SEC))
        while True:
            await asyncio.sleep(interval)
            self._emit_slice(session)

    def _emit_slice(self, session: AudioSession) -> None:
        if not session.pending:
            return
        audio = np.concatenate(session.pending)
        session.pending.clear()
        pcm = float32_to_pcm16(audio)
        if not pcm:
            return
        session.chunks.append(pcm)
        for cb in list(self._slice_subs):
            try:
                cb(pcm)
            except Exception:
                logger.exception("capture slice subscriber failed")

    def snapshot(self) -> Optional[bytes]:
        """WAV container of the audio captured so far, or None when nothing yet."""
        session = self._session
        if session is None or not session.chunks:
            return None
        return build_wav_container(b"".join(session.chunks), session.sample_rate, session.channels)

    async def stop(self) -> Optional[bytes]:
        session = self._session
        if self._state != "recording" or session is None:
            logger.warning("capture stop ignored state=%s", self._state)
            return None
        self._state = "stopped"
        await self._cancel_slice_task()
        self._emit_slice(session)
        session.state = "stopped"
        pcm = b"".join(session.chunks)
        duration_sec = len(pcm) / 2.0 / float(session.sample_rate or 1)
        try:
            if session.captured_bytes == 0:
                raise NoAudioCaptured("No audio was captured during the recording.")
            container = build_wav_container(pcm, session.sample_rate, session.channels)
            logger.info("capture stopped bytes=%s duration_sec=%.2f", len(pcm), duration_sec)
            for cb in list(self._container_subs):
                try:
                    cb(container)
                except Exception:
                    logger.exception("capture container subscriber failed")
            return container
        finally:
            await self.cleanup()

    async def _cancel_slice_task(self) -> None:
        task, self._slice_task = self._slice_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def cleanup(self) -> None:
        if self._start_task is not None and not self._start_task.done():
            with contextlib.suppress(ScribeError):
                await asyncio.shield(self._start_task)
        await self._cancel_slice_task()
        if self._device_open:
            self._device_open = False
            try:
                await asyncio.to_thread(self._backend.close)
            except Exception:
                logger.exception("capture device close failed")
        if self._graph_live:
            self._graph_live = False
            for cb in list(self._teardown_subs):
                try:
                    cb()
                except Exception:
                    logger.exception("capture teardown subscriber failed")
        if self._session is not None and self._session.state == "recording":
            self._session.state = "stopped"
        self._session = None
        if self._state in ("recording", "acquiring"):
            self._state = "stopped"

    async def __aenter__(self) -> "AudioCaptureEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cleanup()
