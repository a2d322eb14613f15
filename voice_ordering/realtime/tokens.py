"""
Ephemeral token issuing for browser realtime clients.

The browser never sees the service API key. It asks this service for a short
lived client secret, which is minted by the provider's realtime sessions
endpoint and remembered here until it expires so the service can validate it.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

import aiohttp
from prometheus_client import Counter

from ..config import OpenAIProviderConfig, RealtimeConfig
from ..core.errors import InvalidArgument, RateLimited, TokenIssueError
from ..logging_config import get_logger

logger = get_logger(__name__)

_CUSTOMER_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_HOUR_SECONDS = 3600.0

_TOKENS_ISSUED = Counter(
    "voice_ordering_realtime_tokens_total",
    "Ephemeral realtime token requests by outcome",
    ["outcome"],
)


@dataclass
class EphemeralToken:
    value: str
    expires_at: float
    realtime_session_id: Optional[str]
    customer_id: str
    session_type: str
    voice_session_id: Optional[str] = None
    created_at: float = 0.0

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "token": self.value,
            "expires_at": self.expires_at,
            "realtime_session_id": self.realtime_session_id,
            "session_type": self.session_type,
            "voice_session_id": self.voice_session_id,
        }


class EphemeralTokenIssuer:
    def __init__(
        self,
        realtime_config: Optional[RealtimeConfig] = None,
        provider_config: Optional[OpenAIProviderConfig] = None,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = realtime_config or RealtimeConfig()
        self._provider = provider_config or OpenAIProviderConfig()
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None
        self._clock = clock
        self._tokens: Dict[str, EphemeralToken] = {}
        self._history: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    async def stop(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _validate_request(self, customer_id: str, session_type: str) -> None:
        if not customer_id or not customer_id.strip():
            raise InvalidArgument("customer_id must not be empty")
        if not _CUSTOMER_ID_RE.match(customer_id):
            raise InvalidArgument("Invalid customer_id format")
        if session_type not in self._config.allowed_session_types:
            raise InvalidArgument(f"Invalid session type: {session_type}")

    def _recent_requests(self, customer_id: str, now: float) -> Deque[float]:
        history = self._history.setdefault(customer_id, deque())
        while history and history[0] <= now - _HOUR_SECONDS:
            history.popleft()
        return history

    def _request_body(self) -> Dict[str, Any]:
        cfg = self._config
        body: Dict[str, Any] = {
            "model": cfg.model,
            "voice": cfg.voice,
            "modalities": list(cfg.modalities),
            "input_audio_format": cfg.input_audio_format,
            "output_audio_format": cfg.output_audio_format,
            "turn_detection": {
                "type": cfg.turn_detection_type,
                "threshold": cfg.vad_threshold,
                "prefix_padding_ms": cfg.prefix_padding_ms,
                "silence_duration_ms": cfg.silence_duration_ms,
            },
        }
        if cfg.instructions:
            body["instructions"] = cfg.instructions
        return body

    async def _create_provider_session(self, request_id: str) -> Dict[str, Any]:
        if not self._provider.api_key:
            raise TokenIssueError("OpenAI API key is not configured")
        if self._session is None or self._session.closed:
            factory = self._session_factory or aiohttp.ClientSession
            self._session = factory()

        headers = {
            "Authorization": f"Bearer {self._provider.api_key}",
            "Content-Type": "application/json",
            "User-Agent": "Voice-Ordering-Orchestrator/1.0",
            "X-Request-ID": request_id,
        }
        timeout = aiohttp.ClientTimeout(total=float(self._config.request_timeout_sec))
        try:
            async with self._session.post(
                self._config.sessions_url,
                headers=headers,
                json=self._request_body(),
                timeout=timeout,
            ) as resp:
                raw = await resp.read()
                status = resp.status
        except asyncio.TimeoutError as e:
            raise TokenIssueError("Realtime session request timed out") from e
        except aiohttp.ClientError as e:
            raise TokenIssueError(f"Realtime session request failed: {e}") from e

        if status >= 400:
            logger.error(
                "Realtime session request rejected",
                status=status,
                request_id=request_id,
                body_preview=raw.decode("utf-8", errors="ignore")[:256],
            )
            raise TokenIssueError(f"Failed to generate ephemeral token (status {status})")
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise TokenIssueError("Malformed realtime session response") from e

    async def issue(
        self,
        customer_id: str,
        session_type: str = "voice_ordering",
        voice_session_id: Optional[str] = None,
    ) -> EphemeralToken:
        """Mint a client secret for ``customer_id``.

        Raises:
            InvalidArgument: bad customer id or session type
            RateLimited: more than ``max_tokens_per_hour`` requests in the last hour
            TokenIssueError: the provider call failed
        """
        self._validate_request(customer_id, session_type)
        async with self._lock:
            now = self._clock()
            history = self._recent_requests(customer_id, now)
            if len(history) >= self._config.max_tokens_per_hour:
                _TOKENS_ISSUED.labels(outcome="rate_limited").inc()
                logger.warning("Token rate limit exceeded", customer_id=customer_id, requests_last_hour=len(history))
                raise RateLimited(f"realtime_token:{customer_id}", retry_after=max(0.0, history[0] + _HOUR_SECONDS - now))
            # Reserve the slot before the provider call so concurrent requests count
            history.append(now)

        request_id = f"req_{uuid.uuid4().hex}"
        try:
            payload = await self._create_provider_session(request_id)
            secret = payload.get("client_secret") or {}
            value = secret.get("value") if isinstance(secret, dict) else None
            if not value:
                raise TokenIssueError("No client secret returned by the realtime sessions endpoint")
        except TokenIssueError:
            _TOKENS_ISSUED.labels(outcome="error").inc()
            async with self._lock:
                history = self._history.get(customer_id)
                if history and now in history:
                    history.remove(now)
            raise

        now = self._clock()
        expires_at = now + self._config.token_ttl_seconds
        provider_expiry = secret.get("expires_at")
        if isinstance(provider_expiry, (int, float)) and provider_expiry > 0:
            expires_at = min(expires_at, float(provider_expiry))

        token = EphemeralToken(
            value=value,
            expires_at=expires_at,
            realtime_session_id=payload.get("id"),
            customer_id=customer_id,
            session_type=session_type,
            voice_session_id=voice_session_id,
            created_at=now,
        )
        async with self._lock:
            self._tokens[value] = token
        _TOKENS_ISSUED.labels(outcome="issued").inc()
        logger.info(
            "Issued ephemeral realtime token",
            customer_id=customer_id,
            session_type=session_type,
            realtime_session_id=token.realtime_session_id,
            expires_in_seconds=round(expires_at - now, 1),
        )
        return token

    async def validate_token(self, value: str) -> Optional[EphemeralToken]:
        """Return the token record if ``value`` is known and unexpired."""
        async with self._lock:
            token = self._tokens.get(value)
            if token is None:
                return None
            if token.expires_at <= self._clock():
                del self._tokens[value]
                return None
            return token

    async def cleanup_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [v for v, t in self._tokens.items() if t.expires_at <= now]
            for value in expired:
                del self._tokens[value]
            for customer_id in list(self._history):
                if not self._recent_requests(customer_id, now):
                    del self._history[customer_id]
        if expired:
            logger.debug("Removed expired ephemeral tokens", count=len(expired))
        return len(expired)

    def active_token_count(self) -> int:
        return len(self._tokens)
