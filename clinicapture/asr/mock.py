from __future__ import annotations

from .base import BatchTranscriptionProvider


class MockBatchProvider(BatchTranscriptionProvider):
    def __init__(self) -> None:
        self._counter = 0

    async def transcribe(self, audio_b64: str, *, language: str = "pt", timeout_sec: float = 60.0) -> str:
        self._counter += 1
        return (
            "Esta é uma transcrição simulada "
            f"(trecho {self._counter}). Em produção, um serviço real de transcrição seria usado."
        )

    def name(self) -> str:
        return "mock"
