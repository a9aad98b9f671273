from __future__ import annotations

from abc import ABC, abstractmethod


class BatchTranscriptionProvider(ABC):
    @abstractmethod
    async def transcribe(self, audio_b64: str, *, language: str = "pt", timeout_sec: float = 60.0) -> str: ...

    @abstractmethod
    def name(self) -> str: ...
