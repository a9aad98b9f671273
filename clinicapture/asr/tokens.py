from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..internal_core.config import ScribeConfig
from ..internal_core.contracts import TranscriptionToken
from ..internal_core.errors import AuthenticationFailed
from .protocol import build_session_config

logger = logging.getLogger(__name__)

TokenFetcher = Callable[[], Awaitable[TranscriptionToken]]


def parse_token_response(data: Any, *, now: float, ttl_fallback_sec: float) -> TranscriptionToken:
    """Read `client_secret.value` / `expires_at`; a zero or missing expiry gets the fallback TTL."""
    if not isinstance(data, dict):
        raise AuthenticationFailed("Token response is not a JSON object")
    secret = data.get("client_secret")
    expires: Any = data.get("expires_at")
    if isinstance(secret, dict):
        value = secret.get("value")
        expires = secret.get("expires_at") or expires
    else:
        value = secret if isinstance(secret, str) else data.get("token")
    if not value:
        raise AuthenticationFailed("Token response is missing client_secret.value")
    try:
        expires_at = float(expires or 0)
    except (TypeError, ValueError):
        expires_at = 0.0
    if expires_at <= 0:
        expires_at = now + float(ttl_fallback_sec)
    return TranscriptionToken(value=str(value), expires_at=expires_at)


class RealtimeTokenIssuer:
    """Mints short-lived transcription session secrets with the server API key."""

    def __init__(
        self,
        cfg: ScribeConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cfg = cfg
        self._client = client
        self._clock = clock

    async def issue(self) -> Dict[str, Any]:
        cfg = self._cfg
        if not cfg.OPENAI_API_KEY:
            raise AuthenticationFailed("OPENAI_API_KEY is not configured")
        headers = {
            "Authorization": f"Bearer {cfg.OPENAI_API_KEY}",
            "Content-Type": "application/json",
        }
        body = build_session_config(cfg)
        try:
            if self._client is not None:
                resp = await self._client.post(cfg.STREAM_TOKEN_URL, json=body, headers=headers, timeout=15.0)
            else:
                async with httpx.AsyncClient(timeout=15.0) as client:
                    resp = await client.post(cfg.STREAM_TOKEN_URL, json=body, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            logger.warning("token request failed http_status=%s", e.response.status_code)
            raise AuthenticationFailed(f"Token request failed with status {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise AuthenticationFailed(f"Token request failed: {e}") from e
        token = parse_token_response(
            data, now=self._clock(), ttl_fallback_sec=cfg.STREAM_TOKEN_TTL_FALLBACK_SEC
        )
        logger.info("transcription token issued expires_at=%s", int(token.expires_at))
        return {"client_secret": {"value": token.value}, "expires_at": int(token.expires_at)}

    async def fetch(self) -> TranscriptionToken:
        data = await self.issue()
        return parse_token_response(
            data, now=self._clock(), ttl_fallback_sec=self._cfg.STREAM_TOKEN_TTL_FALLBACK_SEC
        )


class TokenCache:
    """Reuses a token until it expires or is invalidated; concurrent refreshes share one fetch."""

    def __init__(self, fetch: TokenFetcher, *, clock: Callable[[], float] = time.time) -> None:
        self._fetch = fetch
        self._clock = clock
        self._token: Optional[TranscriptionToken] = None
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    @property
    def current(self) -> Optional[TranscriptionToken]:
        return self._token

    async def get(self) -> TranscriptionToken:
        async with self._lock:
            token = self._token
            if token is not None and not token.is_expired(self._clock()):
                return token
            self.fetch_count += 1
            try:
                token = await self._fetch()
            except AuthenticationFailed:
                self._token = None
                raise
            except Exception as e:
                self._token = None
                raise AuthenticationFailed(f"Token fetch failed: {e}") from e
            self._token = token
            return token

    def invalidate(self) -> None:
        if self._token is not None:
            logger.info("transcription token invalidated")
        self._token = None
