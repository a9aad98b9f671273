from __future__ import annotations

import asyncio
import logging
import os
import threading
from typing import Any, Optional, Protocol

import openai

from ..internal_core.config import ScribeConfig
from ..internal_core.errors import CompletionError
from ..utils.model_paths import resolve_gguf_path

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(
        self,
        *,
        system: str,
        user: str,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> str: ...


class OpenAIChatClient:
    def __init__(self, cfg: ScribeConfig, *, client: Optional[Any] = None) -> None:
        self._model = cfg.LLM_MODEL
        self._temperature = float(cfg.LLM_TEMPERATURE)
        self._max_tokens = int(cfg.LLM_MAX_TOKENS)
        if client is None:
            client = openai.AsyncOpenAI(
                api_key=cfg.OPENAI_API_KEY or None,
                base_url=cfg.OPENAI_BASE_URL or None,
            )
        self._client = client

    async def complete(
        self,
        *,
        system: str,
        user: str,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self._temperature,
            "max_tokens": int(max_tokens or self._max_tokens),
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            resp = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            logger.warning("openai completion failed error=%s", type(e).__name__)
            raise CompletionError(f"Language model request failed: {e}") from e
        content = str(resp.choices[0].message.content or "").strip()
        if not content:
            raise CompletionError("Language model returned an empty response")
        return content


class LlamaCppChatClient:
    """Local GGUF model through llama_cpp, loaded once and run in a worker thread."""

    def __init__(self, cfg: ScribeConfig) -> None:
        self._cfg = cfg
        self._llm: Any = None
        self._chat_format_applied = True
        self._load_lock = threading.Lock()
        self._run_lock = threading.Lock()

    def _load(self) -> Any:
        with self._load_lock:
            if self._llm is not None:
                return self._llm
            cfg = self._cfg
            model_path = resolve_gguf_path(cfg.LLAMA_CPP_MODEL)
            if not model_path:
                raise CompletionError(
                    "Local model path is missing. Set CLINICAPTURE_LLAMA_CPP_MODEL or place a GGUF under models/."
                )
            if not os.path.exists(model_path):
                raise CompletionError(f"Local model file not found: {model_path}")
            try:
                from llama_cpp import Llama  # type: ignore
            except Exception as exc:
                raise CompletionError(f"llama_cpp import failed: {exc}") from exc

            llm_kwargs: dict[str, Any] = {
                "model_path": model_path,
                "n_ctx": int(cfg.LLAMA_CPP_N_CTX),
                "n_gpu_layers": int(cfg.LLAMA_CPP_N_GPU_LAYERS),
                "verbose": False,
                "chat_format": cfg.LLAMA_CPP_CHAT_FORMAT,
            }
            if cfg.LLAMA_CPP_N_THREADS is not None:
                llm_kwargs["n_threads"] = int(cfg.LLAMA_CPP_N_THREADS)
            try:
                self._llm = Llama(**llm_kwargs)
            except TypeError as exc:
                if "chat_format" not in str(exc):
                    raise
                llm_kwargs.pop("chat_format", None)
                self._llm = Llama(**llm_kwargs)
                self._chat_format_applied = False
            logger.info(
                "llama_cpp model loaded path=%s chat_format_applied=%s", model_path, self._chat_format_applied
            )
            return self._llm

    def _run(self, system: str, user: str, max_tokens: int, json_mode: bool) -> str:
        llm = self._load()
        completion_kwargs: dict[str, Any] = {
            # Gemma-style templates have no system role.
            "messages": [{"role": "user", "content": f"{system}\n\n{user}"}],
            "temperature": float(self._cfg.LLM_TEMPERATURE),
            "top_p": 1.0,
            "max_tokens": int(max_tokens),
            "stop": ["<end_of_turn>", "</s>"],
        }
        if json_mode:
            completion_kwargs["response_format"] = {"type": "json_object"}
        with self._run_lock:
            try:
                resp = llm.create_chat_completion(**completion_kwargs)
            except TypeError as exc:
                if "response_format" not in str(exc) or "response_format" not in completion_kwargs:
                    raise
                completion_kwargs.pop("response_format", None)
                resp = llm.create_chat_completion(**completion_kwargs)
        return str(resp["choices"][0]["message"]["content"] or "").strip()

    async def complete(
        self,
        *,
        system: str,
        user: str,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> str:
        try:
            content = await asyncio.to_thread(
                self._run, system, user, int(max_tokens or self._cfg.LLM_MAX_TOKENS), json_mode
            )
        except CompletionError:
            raise
        except Exception as exc:
            raise CompletionError(f"Local generation failed: {exc}") from exc
        if not content:
            raise CompletionError("Local model returned an empty response")
        return content


def build_completion_client(cfg: ScribeConfig) -> CompletionClient:
    backend = (cfg.LLM_BACKEND or "openai").strip().lower()
    if backend == "openai":
        return OpenAIChatClient(cfg)
    if backend in ("llama_cpp", "llama-cpp", "local"):
        return LlamaCppChatClient(cfg)
    raise ValueError(f"Unsupported LLM backend: {cfg.LLM_BACKEND}")
