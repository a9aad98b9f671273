from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, List, Optional

import numpy as np

from .engine import AudioCaptureEngine

logger = logging.getLogger(__name__)

LevelCallback = Callable[[float], None]


def byte_frequency_data(
    samples: np.ndarray,
    fft_size: int = 2048,
    min_db: float = -100.0,
    max_db: float = -30.0,
    previous: Optional[np.ndarray] = None,
    smoothing: float = 0.8,
) -> tuple[np.ndarray, np.ndarray]:
    """Analyser-style spectrum of the last `fft_size` samples.

    Returns (bytes, smoothed_magnitudes). Bytes are dB magnitudes mapped from
    [min_db, max_db] onto 0..255; pass the returned magnitudes back as
    `previous` to get time smoothing across calls.
    """
    window = np.zeros(fft_size, dtype=np.float32)
    tail = np.asarray(samples, dtype=np.float32)[-fft_size:]
    if tail.size:
        window[-tail.size:] = tail
    windowed = window * np.hanning(fft_size).astype(np.float32)
    mags = np.abs(np.fft.rfft(windowed))[: fft_size // 2] / float(fft_size)
    if previous is not None and previous.shape == mags.shape:
        mags = smoothing * previous + (1.0 - smoothing) * mags
    with np.errstate(divide="ignore"):
        db = 20.0 * np.log10(np.maximum(mags, 1e-12))
    scaled = 255.0 * (db - min_db) / (max_db - min_db)
    return np.clip(np.floor(scaled), 0, 255).astype(np.uint8), mags


def compute_level(freq_bytes: np.ndarray) -> float:
    if freq_bytes.size == 0:
        return 0.0
    avg = float(np.mean(freq_bytes.astype(np.float32)))
    return min(1.0, avg / 128.0)


class LevelMonitor:
    """Publishes a 0..1 input level at a fixed cadence while the engine records."""

    def __init__(
        self,
        engine: AudioCaptureEngine,
        *,
        fft_size: int = 2048,
        publish_hz: float = 30.0,
    ) -> None:
        self._engine = engine
        self._fft_size = int(fft_size)
        self._interval = 1.0 / max(1.0, float(publish_hz))
        self._buffer = np.zeros(0, dtype=np.float32)
        self._smoothed: Optional[np.ndarray] = None
        self._subs: List[LevelCallback] = []
        self._task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self.level = 0.0

    @property
    def fft_size(self) -> int:
        return self._fft_size

    @property
    def publish_interval_sec(self) -> float:
        return self._interval

    def subscribe(self, cb: LevelCallback) -> Callable[[], None]:
        self._subs.append(cb)

        def _unsubscribe() -> None:
            if cb in self._subs:
                self._subs.remove(cb)

        return _unsubscribe

    def attach(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._engine.subscribe_frames(self._on_frames),
            self._engine.subscribe_teardown(self._on_teardown),
        ]
        self._task = asyncio.get_running_loop().create_task(self._publish_loop())

    def _on_frames(self, audio: np.ndarray) -> None:
        merged = np.concatenate([self._buffer, audio.astype(np.float32)])
        self._buffer = merged[-self._fft_size:]

    def sample(self) -> float:
        freq_bytes, self._smoothed = byte_frequency_data(
            self._buffer, fft_size=self._fft_size, previous=self._smoothed
        )
        return compute_level(freq_bytes)

    def _publish(self, level: float) -> None:
        self.level = level
        for cb in list(self._subs):
            try:
                cb(level)
            except Exception:
                logger.exception("level subscriber failed")

    async def _publish_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._publish(self.sample())

    def _on_teardown(self) -> None:
        if not self._unsubscribers and self._task is None:
            return
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._buffer = np.zeros(0, dtype=np.float32)
        self._smoothed = None
        self._publish(0.0)

    async def aclose(self) -> None:
        task = self._task
        self._on_teardown()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
