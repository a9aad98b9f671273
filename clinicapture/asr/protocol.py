from __future__ import annotations

import json
from typing import Any, Dict

from ..internal_core.config import ScribeConfig

ACK_EVENTS = frozenset({"transcription_session.created", "transcription_session.updated"})
DELTA_EVENTS = frozenset({"conversation.item.input_audio_transcription.delta", "transcription.delta"})
COMPLETED_EVENTS = frozenset({"conversation.item.input_audio_transcription.completed", "transcription.completed"})
SPEECH_EVENTS = frozenset({"input_audio_buffer.speech_started", "input_audio_buffer.speech_stopped"})


def build_session_config(cfg: ScribeConfig) -> Dict[str, Any]:
    transcription: Dict[str, Any] = {"model": cfg.STREAM_MODEL, "language": cfg.STREAM_LANGUAGE}
    if cfg.STREAM_PROMPT:
        transcription["prompt"] = cfg.STREAM_PROMPT
    return {
        "input_audio_format": "pcm16",
        "input_audio_transcription": transcription,
        "turn_detection": {
            "type": "server_vad",
            "threshold": float(cfg.STREAM_VAD_THRESHOLD),
            "prefix_padding_ms": int(cfg.STREAM_PREFIX_PADDING_MS),
            "silence_duration_ms": int(cfg.STREAM_SILENCE_MS),
        },
        "input_audio_noise_reduction": {"type": cfg.STREAM_NOISE_REDUCTION},
    }


def session_update_message(cfg: ScribeConfig) -> str:
    return json.dumps({"type": "transcription_session.update", "session": build_session_config(cfg)})


def audio_append_message(audio_b64: str) -> str:
    return json.dumps({"type": "input_audio_buffer.append", "audio": audio_b64})


def is_benign_error(event: Dict[str, Any]) -> bool:
    err = event.get("error") or {}
    if not isinstance(err, dict):
        return False
    markers = " ".join(str(err.get(k) or "") for k in ("type", "code", "message")).lower()
    return "commit_empty" in markers or "buffer too small" in markers


def describe_error(event: Dict[str, Any]) -> str:
    err = event.get("error") or {}
    if not isinstance(err, dict):
        return str(err)
    return f"{err.get('type') or 'error'}/{err.get('code') or '-'}: {err.get('message') or ''}".strip()
