from __future__ import annotations

import base64
import io
import wave
from typing import Tuple

import numpy as np


def compute_rms(audio: np.ndarray) -> float:
    if audio.size == 0:
        return 0.0
    x = audio.astype(np.float32)
    return float(np.sqrt(np.mean(x * x)))


def normalize_min_rms(audio: np.ndarray, target_min_rms: float) -> np.ndarray:
    if target_min_rms <= 0:
        return audio
    rms = compute_rms(audio)
    if rms <= 0 or rms >= target_min_rms:
        return audio
    peak = float(np.max(np.abs(audio))) if audio.size else 0.0
    if peak <= 0:
        return audio
    gain = target_min_rms / max(rms, 1e-12)
    max_gain = 0.99 / peak
    gain = min(gain, max_gain)
    if gain <= 1.0:
        return audio
    out = (audio * gain).clip(-1.0, 1.0)
    return out.astype(np.float32)


def apply_noise_gate(audio: np.ndarray, gate_rms: float) -> np.ndarray:
    if gate_rms <= 0 or audio.size == 0:
        return audio
    if compute_rms(audio) >= gate_rms:
        return audio
    return np.zeros_like(audio, dtype=np.float32)


def to_mono_float32(frames: np.ndarray) -> np.ndarray:
    audio = np.asarray(frames, dtype=np.float32)
    if audio.ndim == 2:
        if audio.shape[1] == 1:
            audio = audio[:, 0]
        else:
            audio = audio.mean(axis=1)
    return np.ascontiguousarray(audio.reshape(-1), dtype=np.float32)


def float32_to_pcm16(audio: np.ndarray) -> bytes:
    x = np.asarray(audio, dtype=np.float32).clip(-1.0, 1.0)
    # Asymmetric int16 range: negative samples scale to -32768, positive to 32767.
    scaled = np.where(x < 0, x * 32768.0, x * 32767.0)
    return np.floor(scaled).astype("<i2").tobytes()


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def build_wav_container(pcm16: bytes, sample_rate: int, channels: int = 1) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(int(channels))
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm16)
    return buf.getvalue()


def load_wav_info_bytes(data: bytes) -> Tuple[float, int, int]:
    with wave.open(io.BytesIO(data), "rb") as wf:
        frames = wf.getnframes()
        rate = wf.getframerate()
        channels = wf.getnchannels()
        duration = frames / float(rate) if rate else 0.0
        return duration, rate, channels
