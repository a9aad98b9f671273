from __future__ import annotations

from .aggregator import TranscriptAggregator
from .base import BatchTranscriptionProvider
from .batch import ChunkedBatchTranscriber
from .http_batch import HttpBatchProvider
from .mock import MockBatchProvider
from .openai_batch import OpenAIBatchProvider
from .realtime import StreamingTranscriptionSession
from .tokens import RealtimeTokenIssuer, TokenCache, parse_token_response

__all__ = [
    "BatchTranscriptionProvider",
    "ChunkedBatchTranscriber",
    "HttpBatchProvider",
    "MockBatchProvider",
    "OpenAIBatchProvider",
    "RealtimeTokenIssuer",
    "StreamingTranscriptionSession",
    "TokenCache",
    "TranscriptAggregator",
    "build_batch_provider",
    "parse_token_response",
]


def build_batch_provider(cfg) -> BatchTranscriptionProvider:
    name = (cfg.BATCH_PROVIDER or "mock").strip().lower()
    if name == "mock":
        return MockBatchProvider()
    if name == "http":
        return HttpBatchProvider(cfg.BATCH_URL, api_key=cfg.SUPABASE_KEY)
    if name == "openai":
        return OpenAIBatchProvider(model=cfg.BATCH_MODEL, api_key=cfg.OPENAI_API_KEY, base_url=cfg.OPENAI_BASE_URL)
    raise ValueError(f"Unsupported batch provider: {cfg.BATCH_PROVIDER}")
