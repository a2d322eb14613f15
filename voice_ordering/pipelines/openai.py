"""
OpenAI component adapters for the voice ordering pipeline.

This module provides concrete STT, response generation and TTS adapters for
OpenAI's REST endpoints (audio.transcriptions, chat.completions, audio.speech).
Each adapter owns a lazily created aiohttp session; tests inject a
``session_factory`` returning a fake session.

HTTP failures are mapped onto ``ProviderFailure``: 408/409/429/5xx, timeouts
and connection errors are transient, every other 4xx is permanent.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
import uuid
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import aiohttp

from ..config import OpenAIProviderConfig
from ..core.errors import ProviderFailure
from ..logging_config import get_logger
from .base import LLMComponent, LLMResponse, ResponseContext, STTComponent, TTSComponent, Transcription

logger = get_logger(__name__)

_TRANSIENT_STATUSES = {408, 409, 429, 500, 502, 503, 504}
_CONTENT_TYPES = {
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "mpeg": "audio/mpeg",
    "mpga": "audio/mpeg",
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
    "webm": "audio/webm",
    "ogg": "audio/ogg",
    "oga": "audio/ogg",
}


# Shared helpers -----------------------------------------------------------------

def _merge_dicts(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = dict(base or {})
    if override:
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = _merge_dicts(merged[key], value)
            elif value is not None:
                merged[key] = value
    return merged


def _make_http_headers(options: Dict[str, Any]) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {options['api_key']}",
        "User-Agent": "Voice-Ordering-Orchestrator/1.0",
    }
    if options.get("organization"):
        headers["OpenAI-Organization"] = options["organization"]
    return headers


def _failure_for_status(provider: str, status: int, body_text: str) -> ProviderFailure:
    return ProviderFailure(
        provider,
        f"request failed (status {status}): {(body_text or '')[:256]}",
        transient=status in _TRANSIENT_STATUSES,
        status=status,
    )


class _OpenAIComponentMixin:
    """aiohttp session management shared by the adapters."""

    provider_name = "openai"

    def _init_common(
        self,
        component_key: str,
        provider_config: OpenAIProviderConfig,
        options: Optional[Dict[str, Any]],
        session_factory: Optional[Callable[[], aiohttp.ClientSession]],
    ) -> None:
        self.component_key = component_key
        self._provider_defaults = provider_config
        self._pipeline_defaults = options or {}
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    async def stop(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    def _compose_options(self, runtime_options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        defaults = {
            "api_key": self._provider_defaults.api_key,
            "organization": self._provider_defaults.organization,
            "base_url": self._provider_defaults.base_url,
            "timeout_sec": self._provider_defaults.request_timeout_sec,
        }
        merged = _merge_dicts(_merge_dicts(defaults, self._pipeline_defaults), runtime_options)
        if not merged.get("api_key"):
            raise ProviderFailure(self.component_key, "OpenAI API key is not configured", transient=False)
        return merged

    async def _post(self, url: str, *, options: Dict[str, Any], request_id: str, **kwargs) -> tuple[int, bytes]:
        await self._ensure_session()
        assert self._session
        timeout = aiohttp.ClientTimeout(total=float(options.get("timeout_sec") or 30.0))
        try:
            async with self._session.post(url, headers=_make_http_headers(options), timeout=timeout, **kwargs) as resp:
                raw = await resp.read()
                return resp.status, raw
        except asyncio.TimeoutError as e:
            raise ProviderFailure(self.component_key, f"request timed out ({request_id})", transient=True) from e
        except aiohttp.ClientError as e:
            raise ProviderFailure(self.component_key, f"connection error: {e}", transient=True) from e


class OpenAISTTAdapter(_OpenAIComponentMixin, STTComponent):
    """OpenAI Speech-to-Text adapter using /v1/audio/transcriptions."""

    def __init__(
        self,
        component_key: str,
        provider_config: OpenAIProviderConfig,
        options: Optional[Dict[str, Any]] = None,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self._init_common(component_key, provider_config, options, session_factory)

    async def start(self) -> None:
        logger.debug("OpenAI STT adapter initialized", component=self.component_key, model=self._provider_defaults.stt_model)

    async def transcribe(self, session_id: str, audio_path: Path, options: Dict[str, Any]) -> Transcription:
        merged = self._compose_options(options)
        model = merged.get("model") or self._provider_defaults.stt_model
        audio_path = Path(audio_path)
        fmt = audio_path.suffix.lstrip(".").lower()
        audio_bytes = await asyncio.get_running_loop().run_in_executor(None, audio_path.read_bytes)

        form = aiohttp.FormData()
        form.add_field(
            "file",
            audio_bytes,
            filename=audio_path.name,
            content_type=_CONTENT_TYPES.get(fmt, "application/octet-stream"),
        )
        form.add_field("model", str(model))
        form.add_field("response_format", "verbose_json")
        if merged.get("language"):
            form.add_field("language", str(merged["language"]))
        if merged.get("prompt"):
            form.add_field("prompt", str(merged["prompt"]))

        request_id = f"openai-stt-{uuid.uuid4().hex[:12]}"
        url = merged["base_url"].rstrip("/") + "/audio/transcriptions"
        started_at = time.perf_counter()
        status, raw = await self._post(url, options=merged, request_id=request_id, data=form)
        latency_ms = (time.perf_counter() - started_at) * 1000.0
        body_text = raw.decode("utf-8", errors="ignore")
        if status >= 400:
            logger.error(
                "OpenAI STT request failed",
                session_id=session_id,
                request_id=request_id,
                status=status,
                model=model,
                body_preview=body_text[:200],
            )
            raise _failure_for_status(self.component_key, status, body_text)

        transcription = self._parse_transcription(body_text)
        logger.info(
            "OpenAI STT transcript received",
            session_id=session_id,
            request_id=request_id,
            latency_ms=round(latency_ms, 2),
            transcript_preview=transcription.text[:80],
        )
        return transcription

    @staticmethod
    def _parse_transcription(body_text: str) -> Transcription:
        try:
            data = json.loads(body_text)
        except json.JSONDecodeError:
            return Transcription(text=body_text.strip())
        if not isinstance(data, dict):
            return Transcription(text="")

        confidence = None
        segments = data.get("segments") or []
        logprobs = [s.get("avg_logprob") for s in segments if isinstance(s, dict) and s.get("avg_logprob") is not None]
        if logprobs:
            confidence = round(math.exp(sum(logprobs) / len(logprobs)), 4)
        return Transcription(
            text=str(data.get("text") or "").strip(),
            language=data.get("language"),
            confidence=confidence,
            duration_seconds=data.get("duration"),
        )


class OpenAILLMAdapter(_OpenAIComponentMixin, LLMComponent):
    """Response generation through Chat Completions."""

    def __init__(
        self,
        component_key: str,
        provider_config: OpenAIProviderConfig,
        options: Optional[Dict[str, Any]] = None,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self._init_common(component_key, provider_config, options, session_factory)

    async def start(self) -> None:
        logger.debug("OpenAI LLM adapter initialized", component=self.component_key, model=self._provider_defaults.chat_model)

    async def generate(
        self,
        session_id: str,
        transcript: str,
        context: ResponseContext,
        options: Dict[str, Any],
    ) -> LLMResponse:
        merged = self._compose_options(options)
        payload = {
            "model": merged.get("model") or self._provider_defaults.chat_model,
            "messages": self._build_messages(transcript, context),
            "max_tokens": int(context.max_tokens),
            "temperature": float(context.temperature),
        }
        request_id = f"openai-llm-{uuid.uuid4().hex[:12]}"
        url = merged["base_url"].rstrip("/") + "/chat/completions"
        started_at = time.perf_counter()
        status, raw = await self._post(url, options=merged, request_id=request_id, json=payload)
        body_text = raw.decode("utf-8", errors="ignore")
        if status >= 400:
            logger.error(
                "OpenAI chat completion failed",
                session_id=session_id,
                request_id=request_id,
                status=status,
                body_preview=body_text[:200],
            )
            raise _failure_for_status(self.component_key, status, body_text)

        try:
            data = json.loads(body_text)
            content = data["choices"][0]["message"].get("content") or ""
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise ProviderFailure(self.component_key, f"unexpected chat completion payload: {e}", transient=False) from e

        logger.info(
            "OpenAI chat completion received",
            session_id=session_id,
            request_id=request_id,
            latency_ms=round((time.perf_counter() - started_at) * 1000.0, 2),
            response_preview=content[:80],
        )
        return LLMResponse(text=content.strip(), metadata=data.get("usage", {}) or {})

    @staticmethod
    def _build_messages(transcript: str, context: ResponseContext) -> List[Dict[str, str]]:
        system = context.system_prompt
        if context.menu_context:
            system += "\n\n" + context.menu_context
        if context.order_context:
            system += "\n\nCurrent order status: " + context.order_context
        if context.order_update_message:
            system += "\n\nOrder system result for the latest request: " + context.order_update_message
        messages = [{"role": "system", "content": system}]
        messages.extend(context.history)
        messages.append({"role": "user", "content": transcript})
        return messages


class OpenAITTSAdapter(_OpenAIComponentMixin, TTSComponent):
    """Speech synthesis through the audio.speech REST API."""

    def __init__(
        self,
        component_key: str,
        provider_config: OpenAIProviderConfig,
        options: Optional[Dict[str, Any]] = None,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
        chunk_size: int = 16384,
    ):
        self._init_common(component_key, provider_config, options, session_factory)
        self._chunk_size = chunk_size

    async def start(self) -> None:
        logger.debug(
            "OpenAI TTS adapter initialized",
            component=self.component_key,
            model=self._provider_defaults.tts_model,
            voice=self._provider_defaults.voice,
        )

    async def synthesize(self, session_id: str, text: str, options: Dict[str, Any]) -> AsyncIterator[bytes]:
        if not text:
            return
        merged = self._compose_options(options)
        payload = {
            "model": merged.get("tts_model") or self._provider_defaults.tts_model,
            "input": text,
            "voice": merged.get("voice") or self._provider_defaults.voice,
            "response_format": merged.get("response_format") or self._provider_defaults.tts_response_format,
        }
        request_id = f"openai-tts-{uuid.uuid4().hex[:12]}"
        url = merged["base_url"].rstrip("/") + "/audio/speech"
        logger.info(
            "OpenAI TTS synthesis started",
            session_id=session_id,
            request_id=request_id,
            model=payload["model"],
            voice=payload["voice"],
            text_preview=text[:64],
        )
        status, data = await self._post(url, options=merged, request_id=request_id, json=payload)
        if status >= 400:
            body_text = data.decode("utf-8", errors="ignore")
            logger.error(
                "OpenAI TTS synthesis failed",
                session_id=session_id,
                request_id=request_id,
                status=status,
                body_preview=body_text[:128],
            )
            raise _failure_for_status(self.component_key, status, body_text)

        logger.info("OpenAI TTS synthesis completed", session_id=session_id, request_id=request_id, output_bytes=len(data))
        for idx in range(0, len(data), self._chunk_size):
            yield data[idx: idx + self._chunk_size]
