from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_opt_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _getenv_int_set(name: str, default: frozenset[int]) -> frozenset[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return frozenset(int(part) for part in value.split(",") if part.strip())


def _env_set(name: str) -> bool:
    value = os.getenv(name)
    return value is not None and value != ""


def _getenv_float_preset(name: str, default: float, preset_value: Optional[float]) -> float:
    if _env_set(name):
        return _getenv_float(name, default)
    if preset_value is not None:
        return float(preset_value)
    return default


def _getenv_int_preset(name: str, default: int, preset_value: Optional[int]) -> int:
    if _env_set(name):
        return _getenv_int(name, default)
    if preset_value is not None:
        return int(preset_value)
    return default


def _getenv_str_preset(name: str, default: str, preset_value: Optional[str]) -> str:
    if _env_set(name):
        return _getenv_str(name, default)
    if preset_value is not None:
        return str(preset_value)
    return default


def _preset_overrides(name: str) -> dict[str, object]:
    # Consultation rooms: clinician close to the mic vs. a room microphone.
    if name == "near_field":
        return {
            "CLINICAPTURE_STREAM_NOISE_REDUCTION": "near_field",
            "CLINICAPTURE_STREAM_VAD_THRESHOLD": 0.5,
            "CLINICAPTURE_STREAM_SILENCE_MS": 500,
        }
    if name == "far_field":
        return {
            "CLINICAPTURE_STREAM_NOISE_REDUCTION": "far_field",
            "CLINICAPTURE_STREAM_VAD_THRESHOLD": 0.35,
            "CLINICAPTURE_STREAM_PREFIX_PADDING_MS": 500,
            "CLINICAPTURE_STREAM_SILENCE_MS": 800,
        }
    return {}


DEFAULT_RETRYABLE_CLOSE_CODES = frozenset({1001, 1006, 1011, 1012, 1013, 3000})


@dataclass(frozen=True)
class ScribeConfig:
    # capture
    CAPTURE_ECHO_CANCELLATION: bool
    CAPTURE_NOISE_SUPPRESSION: bool
    CAPTURE_AUTO_GAIN_CONTROL: bool
    CAPTURE_SAMPLE_RATE: int
    CAPTURE_CHANNEL_COUNT: int
    CAPTURE_DEVICE: Optional[int]
    CAPTURE_SLICE_INTERVAL_SEC: float
    CAPTURE_TARGET_MIN_RMS: float
    CAPTURE_NOISE_GATE_RMS: float
    LEVEL_FFT_SIZE: int
    LEVEL_PUBLISH_HZ: float
    # streaming transcription
    STREAM_ENABLED: bool
    STREAM_PRESET: str
    STREAM_URL: str
    STREAM_MODEL: str
    STREAM_LANGUAGE: str
    STREAM_PROMPT: str
    STREAM_VAD_THRESHOLD: float
    STREAM_PREFIX_PADDING_MS: int
    STREAM_SILENCE_MS: int
    STREAM_NOISE_REDUCTION: str
    STREAM_MAX_RETRIES: int
    STREAM_RETRY_DELAY_SEC: float
    STREAM_RETRYABLE_CLOSE_CODES: frozenset[int]
    STREAM_HANDSHAKE_TIMEOUT_SEC: float
    STREAM_TOKEN_URL: str
    STREAM_TOKEN_TTL_FALLBACK_SEC: int
    STREAM_TOKEN_RATE_LIMIT: int
    STREAM_TOKEN_RATE_WINDOW_SEC: int
    # batch transcription
    BATCH_PROVIDER: str
    BATCH_URL: str
    BATCH_MODEL: str
    BATCH_INTERVAL_SEC: float
    BATCH_TIMEOUT_SEC: float
    # generation pipeline
    PIPELINE_REVIEW_REQUIRED: bool
    PIPELINE_USE_HISTORY: bool
    PIPELINE_EXTRACTION_TIMEOUT_SEC: float
    PIPELINE_ORCHESTRATION_TIMEOUT_SEC: float
    PIPELINE_DOCS_SEQUENTIAL: bool
    PIPELINE_HISTORY_LIMIT: int
    # history store
    HISTORY_BACKEND: str
    HISTORY_TIMEOUT_SEC: float
    SUPABASE_URL: str
    SUPABASE_KEY: str
    # llm
    LLM_BACKEND: str
    LLM_MODEL: str
    LLM_TEMPERATURE: float
    LLM_MAX_TOKENS: int
    LLAMA_CPP_MODEL: str
    LLAMA_CPP_CHAT_FORMAT: str
    LLAMA_CPP_N_CTX: int
    LLAMA_CPP_N_GPU_LAYERS: int
    LLAMA_CPP_N_THREADS: Optional[int]
    OPENAI_API_KEY: str
    OPENAI_BASE_URL: str
    # service
    SESSION_TTL_SECONDS: int
    LOG_LEVEL: str


def load_config() -> ScribeConfig:
    stream_preset = _getenv_str("CLINICAPTURE_STREAM_PRESET", "")
    preset = _preset_overrides(stream_preset)

    return ScribeConfig(
        CAPTURE_ECHO_CANCELLATION=_getenv_bool("CLINICAPTURE_ECHO_CANCELLATION", True),
        CAPTURE_NOISE_SUPPRESSION=_getenv_bool("CLINICAPTURE_NOISE_SUPPRESSION", True),
        CAPTURE_AUTO_GAIN_CONTROL=_getenv_bool("CLINICAPTURE_AUTO_GAIN_CONTROL", True),
        CAPTURE_SAMPLE_RATE=_getenv_int("CLINICAPTURE_SAMPLE_RATE", 24000),
        CAPTURE_CHANNEL_COUNT=_getenv_int("CLINICAPTURE_CHANNEL_COUNT", 1),
        CAPTURE_DEVICE=_getenv_opt_int("CLINICAPTURE_CAPTURE_DEVICE"),
        CAPTURE_SLICE_INTERVAL_SEC=_getenv_float("CLINICAPTURE_SLICE_INTERVAL_SEC", 0.5),
        CAPTURE_TARGET_MIN_RMS=_getenv_float("CLINICAPTURE_TARGET_MIN_RMS", 0.02),
        CAPTURE_NOISE_GATE_RMS=_getenv_float("CLINICAPTURE_NOISE_GATE_RMS", 0.004),
        LEVEL_FFT_SIZE=_getenv_int("CLINICAPTURE_LEVEL_FFT_SIZE", 2048),
        LEVEL_PUBLISH_HZ=_getenv_float("CLINICAPTURE_LEVEL_PUBLISH_HZ", 30.0),
        STREAM_ENABLED=_getenv_bool("CLINICAPTURE_STREAM_ENABLED", False),
        STREAM_PRESET=stream_preset,
        STREAM_URL=_getenv_str(
            "CLINICAPTURE_STREAM_URL", "wss://api.openai.com/v1/realtime?intent=transcription"
        ),
        STREAM_MODEL=_getenv_str("CLINICAPTURE_STREAM_MODEL", "gpt-4o-transcribe"),
        STREAM_LANGUAGE=_getenv_str("CLINICAPTURE_STREAM_LANGUAGE", "pt"),
        STREAM_PROMPT=_getenv_str(
            "CLINICAPTURE_STREAM_PROMPT",
            "Consulta médica em português. Termos clínicos, medicamentos e posologias.",
        ),
        STREAM_VAD_THRESHOLD=_getenv_float_preset(
            "CLINICAPTURE_STREAM_VAD_THRESHOLD", 0.5, preset.get("CLINICAPTURE_STREAM_VAD_THRESHOLD")
        ),
        STREAM_PREFIX_PADDING_MS=_getenv_int_preset(
            "CLINICAPTURE_STREAM_PREFIX_PADDING_MS", 300, preset.get("CLINICAPTURE_STREAM_PREFIX_PADDING_MS")
        ),
        STREAM_SILENCE_MS=_getenv_int_preset(
            "CLINICAPTURE_STREAM_SILENCE_MS", 500, preset.get("CLINICAPTURE_STREAM_SILENCE_MS")
        ),
        STREAM_NOISE_REDUCTION=_getenv_str_preset(
            "CLINICAPTURE_STREAM_NOISE_REDUCTION", "near_field", preset.get("CLINICAPTURE_STREAM_NOISE_REDUCTION")
        ),
        STREAM_MAX_RETRIES=_getenv_int("CLINICAPTURE_STREAM_MAX_RETRIES", 3),
        STREAM_RETRY_DELAY_SEC=_getenv_float("CLINICAPTURE_STREAM_RETRY_DELAY_SEC", 1.0),
        STREAM_RETRYABLE_CLOSE_CODES=_getenv_int_set(
            "CLINICAPTURE_STREAM_RETRYABLE_CODES", DEFAULT_RETRYABLE_CLOSE_CODES
        ),
        STREAM_HANDSHAKE_TIMEOUT_SEC=_getenv_float("CLINICAPTURE_STREAM_HANDSHAKE_TIMEOUT_SEC", 10.0),
        STREAM_TOKEN_URL=_getenv_str(
            "CLINICAPTURE_STREAM_TOKEN_URL", "https://api.openai.com/v1/realtime/transcription_sessions"
        ),
        STREAM_TOKEN_TTL_FALLBACK_SEC=_getenv_int("CLINICAPTURE_STREAM_TOKEN_TTL_FALLBACK_SEC", 600),
        STREAM_TOKEN_RATE_LIMIT=_getenv_int("CLINICAPTURE_STREAM_TOKEN_RATE_LIMIT", 5),
        STREAM_TOKEN_RATE_WINDOW_SEC=_getenv_int("CLINICAPTURE_STREAM_TOKEN_RATE_WINDOW_SEC", 60),
        BATCH_PROVIDER=_getenv_str("CLINICAPTURE_BATCH_PROVIDER", "mock"),
        BATCH_URL=_getenv_str("CLINICAPTURE_BATCH_URL", ""),
        BATCH_MODEL=_getenv_str("CLINICAPTURE_BATCH_MODEL", "whisper-1"),
        BATCH_INTERVAL_SEC=_getenv_float("CLINICAPTURE_BATCH_INTERVAL_SEC", 5.0),
        BATCH_TIMEOUT_SEC=_getenv_float("CLINICAPTURE_BATCH_TIMEOUT_SEC", 60.0),
        PIPELINE_REVIEW_REQUIRED=_getenv_bool("CLINICAPTURE_REVIEW_REQUIRED", True),
        PIPELINE_USE_HISTORY=_getenv_bool("CLINICAPTURE_USE_HISTORY", True),
        PIPELINE_EXTRACTION_TIMEOUT_SEC=_getenv_float("CLINICAPTURE_EXTRACTION_TIMEOUT_SEC", 90.0),
        PIPELINE_ORCHESTRATION_TIMEOUT_SEC=_getenv_float("CLINICAPTURE_ORCHESTRATION_TIMEOUT_SEC", 120.0),
        PIPELINE_DOCS_SEQUENTIAL=_getenv_bool("CLINICAPTURE_DOCS_SEQUENTIAL", False),
        PIPELINE_HISTORY_LIMIT=_getenv_int("CLINICAPTURE_HISTORY_LIMIT", 5),
        HISTORY_BACKEND=_getenv_str("CLINICAPTURE_HISTORY_BACKEND", "memory"),
        HISTORY_TIMEOUT_SEC=_getenv_float("CLINICAPTURE_HISTORY_TIMEOUT_SEC", 10.0),
        SUPABASE_URL=_getenv_str("CLINICAPTURE_SUPABASE_URL", ""),
        SUPABASE_KEY=_getenv_str("CLINICAPTURE_SUPABASE_KEY", ""),
        LLM_BACKEND=_getenv_str("CLINICAPTURE_LLM_BACKEND", "openai"),
        LLM_MODEL=_getenv_str("CLINICAPTURE_LLM_MODEL", "gpt-4o"),
        LLM_TEMPERATURE=_getenv_float("CLINICAPTURE_LLM_TEMPERATURE", 0.3),
        LLM_MAX_TOKENS=_getenv_int("CLINICAPTURE_LLM_MAX_TOKENS", 1200),
        LLAMA_CPP_MODEL=_getenv_str("CLINICAPTURE_LLAMA_CPP_MODEL", ""),
        LLAMA_CPP_CHAT_FORMAT=_getenv_str("CLINICAPTURE_LLAMA_CPP_CHAT_FORMAT", "gemma"),
        LLAMA_CPP_N_CTX=_getenv_int("CLINICAPTURE_LLAMA_CPP_N_CTX", 8192),
        LLAMA_CPP_N_GPU_LAYERS=_getenv_int("CLINICAPTURE_LLAMA_CPP_N_GPU_LAYERS", -1),
        LLAMA_CPP_N_THREADS=_getenv_opt_int("CLINICAPTURE_LLAMA_CPP_N_THREADS"),
        OPENAI_API_KEY=_getenv_str("OPENAI_API_KEY", ""),
        OPENAI_BASE_URL=_getenv_str("CLINICAPTURE_OPENAI_BASE_URL", ""),
        SESSION_TTL_SECONDS=_getenv_int("CLINICAPTURE_SESSION_TTL_SECONDS", 14400),
        LOG_LEVEL=_getenv_str("CLINICAPTURE_LOG_LEVEL", "INFO"),
    )


def configure_logging(cfg: ScribeConfig) -> None:
    level = getattr(logging, str(cfg.LOG_LEVEL or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logging.getLogger("clinicapture").setLevel(level)
