"""
Audio Pipeline Coordinator

Runs one voice interaction end to end:

1. validate the audio and admit the request against the shared rate limits
2. write the audio to a scoped temp file and transcribe it
3. under the session lock: apply the order intent, generate the reply and
   append the conversation turn (all or nothing)
4. synthesize the reply outside the lock

Each interaction runs as its own asyncio task, tracked per session, so closing
a session cancels whatever is still in flight for it. A request whose turn
is already in the log runs to completion and keeps its result. Interactions
on the same session queue on the session lock and commit in lock acquisition
order; they are never rejected for running concurrently.

Every request carries a request id. A request id that already committed is
answered from the stored result instead of being applied again.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

import structlog
from prometheus_client import Counter, Histogram
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import ConversationConfig, PipelineConfig
from ..logging_config import reset_correlation_id, set_correlation_id
from ..pipelines.base import LLMComponent, ResponseContext, STTComponent, TTSComponent, Transcription
from .audio_storage import AudioStorage, pcm16_to_wav
from .catalog import MenuCatalog
from .conversation_log import ConversationLog
from .errors import (
    InvalidArgument,
    InvalidAudio,
    ProviderFailure,
    SessionExpired,
    SessionNotFound,
    VoiceOrderingError,
)
from .intent_processor import OrderIntentProcessor
from .models import OrderAction, OrderUpdateResult, VoiceProcessingResult, VoiceSession
from .rate_limiter import RateLimiter
from .session_registry import SessionRegistry

logger = structlog.get_logger(__name__)

_PIPELINE_REQUESTS = Counter(
    "voice_ordering_pipeline_requests_total",
    "Voice interactions by outcome",
    ["kind", "outcome"],
)
_STAGE_LATENCY = Histogram(
    "voice_ordering_pipeline_stage_seconds",
    "Latency of external pipeline stages",
    ["stage"],
)

_MAX_REMEMBERED_REQUESTS = 1000


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderFailure) and exc.transient


class AudioPipelineCoordinator:
    def __init__(
        self,
        registry: SessionRegistry,
        conversation_log: ConversationLog,
        intent_processor: OrderIntentProcessor,
        catalog: MenuCatalog,
        rate_limiter: RateLimiter,
        audio_storage: AudioStorage,
        *,
        stt: Optional[STTComponent],
        llm: LLMComponent,
        tts: Optional[TTSComponent] = None,
        pipeline_config: Optional[PipelineConfig] = None,
        conversation_config: Optional[ConversationConfig] = None,
    ):
        self._registry = registry
        self._log = conversation_log
        self._intents = intent_processor
        self._catalog = catalog
        self._limiter = rate_limiter
        self._storage = audio_storage
        self._stt = stt
        self._llm = llm
        self._tts = tts
        self._pipeline = pipeline_config or PipelineConfig()
        self._conversation = conversation_config or ConversationConfig()

        self._inflight: Dict[str, Dict[asyncio.Task, str]] = {}
        self._committing: Set[Tuple[str, str]] = set()
        self._completed: "OrderedDict[Tuple[str, str], VoiceProcessingResult]" = OrderedDict()
        self._tts_cache: "OrderedDict[str, bytes]" = OrderedDict()
        registry.add_close_listener(self._on_session_closed)

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        for component in (self._stt, self._llm, self._tts):
            if component is not None:
                await component.start()

    async def stop(self) -> None:
        tasks = [t for tasks in self._inflight.values() for t in tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        for component in (self._stt, self._llm, self._tts):
            if component is not None:
                await component.stop()

    def _on_session_closed(self, session: VoiceSession) -> None:
        current = asyncio.current_task() if self._has_running_loop() else None
        for task, request_id in list(self._inflight.get(session.session_id, {}).items()):
            if task is current or task.done():
                continue
            if (session.session_id, request_id) in self._committing:
                # Its turn is already in the log; let it finish
                continue
            task.cancel()
        self._limiter.forget_session(session.session_id)

    @staticmethod
    def _has_running_loop() -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    def _track(self, session_id: str, request_id: str, task: asyncio.Task) -> None:
        self._inflight.setdefault(session_id, {})[task] = request_id

        def _untrack(done: asyncio.Task) -> None:
            tasks = self._inflight.get(session_id)
            if tasks is not None:
                tasks.pop(done, None)
                if not tasks:
                    self._inflight.pop(session_id, None)

        task.add_done_callback(_untrack)

    def inflight_count(self, session_id: Optional[str] = None) -> int:
        if session_id is not None:
            return len(self._inflight.get(session_id, ()))
        return sum(len(tasks) for tasks in self._inflight.values())

    # ------------------------------------------------------------------ public API

    def submit_voice_interaction(
        self,
        audio: bytes,
        session_id: str,
        language: Optional[str] = "en",
        *,
        audio_format: str = "webm",
        synthesize: Optional[bool] = None,
        request_id: Optional[str] = None,
    ) -> asyncio.Task:
        """Start a voice interaction and return its task handle."""
        request_id = request_id or uuid.uuid4().hex
        task = asyncio.create_task(
            self._execute(
                "voice",
                session_id,
                request_id,
                lambda: self._run_voice(audio, session_id, language, audio_format, synthesize, request_id),
            ),
            name=f"voice-interaction-{request_id[:8]}",
        )
        self._track(session_id, request_id, task)
        return task

    async def process_voice_interaction(
        self,
        audio: bytes,
        session_id: str,
        language: Optional[str] = "en",
        *,
        audio_format: str = "webm",
        synthesize: Optional[bool] = None,
        request_id: Optional[str] = None,
    ) -> VoiceProcessingResult:
        """Run a voice interaction and wait for its result.

        Raises:
            SessionNotFound / SessionExpired: the session is not usable
        """
        request_id = request_id or uuid.uuid4().hex
        task = self.submit_voice_interaction(
            audio,
            session_id,
            language,
            audio_format=audio_format,
            synthesize=synthesize,
            request_id=request_id,
        )
        return await self._await_task(task, session_id, request_id)

    async def process_text_interaction(
        self,
        text: str,
        session_id: str,
        *,
        synthesize: bool = False,
        request_id: Optional[str] = None,
    ) -> VoiceProcessingResult:
        """Same chain as a voice interaction, starting from text instead of audio."""
        request_id = request_id or uuid.uuid4().hex
        task = asyncio.create_task(
            self._execute("text", session_id, request_id, lambda: self._run_text(text, session_id, synthesize, request_id)),
            name=f"text-interaction-{request_id[:8]}",
        )
        self._track(session_id, request_id, task)
        return await self._await_task(task, session_id, request_id)

    async def text_to_speech(self, text: str, session_id: Optional[str] = None) -> bytes:
        """Synthesize ``text``; identical texts are served from an LRU cache."""
        if not text or not text.strip():
            raise InvalidArgument("text must not be empty")
        if self._tts is None:
            raise ProviderFailure("tts", "speech synthesis is not configured", transient=False)

        cached = self._tts_cache.get(text)
        if cached is not None:
            self._tts_cache.move_to_end(text)
            return cached

        async def _synthesize() -> bytes:
            chunks = []
            async for chunk in self._tts.synthesize(session_id or "tts", text, {}):
                chunks.append(chunk)
            return b"".join(chunks)

        audio = await self._call_provider("tts", _synthesize)
        if audio and self._pipeline.tts_cache_size > 0:
            self._tts_cache[text] = audio
            while len(self._tts_cache) > self._pipeline.tts_cache_size:
                self._tts_cache.popitem(last=False)
        return audio

    async def get_rate_limit_status(self, customer_id: Optional[str] = None, session_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._limiter.get_status(customer_id=customer_id, session_id=session_id)

    async def cleanup(self) -> Dict[str, int]:
        loop = asyncio.get_running_loop()
        files_removed = await loop.run_in_executor(None, self._storage.cleanup_old_files)
        buckets_removed = await self._limiter.cleanup_inactive()
        expired = await self._registry.sweep_idle_sessions()
        return {
            "temp_files_removed": files_removed,
            "rate_limit_buckets_removed": buckets_removed,
            "sessions_expired": len(expired),
        }

    # ------------------------------------------------------------------ execution

    async def _await_task(self, task: asyncio.Task, session_id: str, request_id: str) -> VoiceProcessingResult:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.done() and task.cancelled():
                # Cancelled by a session close, not by our caller
                logger.info("Voice interaction cancelled by session close", session_id=session_id, request_id=request_id)
                return VoiceProcessingResult(
                    session_id=session_id,
                    request_id=request_id,
                    success=False,
                    error="Session was closed while the request was in progress",
                    error_code=SessionExpired.code,
                )
            task.cancel()
            raise

    async def _execute(
        self,
        kind: str,
        session_id: str,
        request_id: str,
        run: Callable[[], Awaitable[VoiceProcessingResult]],
    ) -> VoiceProcessingResult:
        token = set_correlation_id(session_id)
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(run(), timeout=self._pipeline.request_timeout_seconds)
            _PIPELINE_REQUESTS.labels(kind=kind, outcome="success" if result.success else "failure").inc()
            return result
        except (SessionNotFound, SessionExpired):
            _PIPELINE_REQUESTS.labels(kind=kind, outcome="session_unavailable").inc()
            raise
        except asyncio.TimeoutError:
            _PIPELINE_REQUESTS.labels(kind=kind, outcome="timeout").inc()
            logger.warning(
                "Voice interaction timed out",
                session_id=session_id,
                request_id=request_id,
                timeout_seconds=self._pipeline.request_timeout_seconds,
            )
            error = ProviderFailure("pipeline", "request timed out", transient=True)
            return self._failure(session_id, request_id, error, started)
        except VoiceOrderingError as e:
            _PIPELINE_REQUESTS.labels(kind=kind, outcome=e.code).inc()
            logger.warning(
                "Voice interaction failed",
                session_id=session_id,
                request_id=request_id,
                error_code=e.code,
                error=str(e),
            )
            return self._failure(session_id, request_id, e, started)
        except Exception as e:
            _PIPELINE_REQUESTS.labels(kind=kind, outcome="internal_error").inc()
            logger.error(
                "Voice interaction crashed",
                session_id=session_id,
                request_id=request_id,
                error=str(e),
                exc_info=True,
            )
            return VoiceProcessingResult(
                session_id=session_id,
                request_id=request_id,
                success=False,
                error=f"Internal error: {e}",
                error_code="internal_error",
                processing_time_ms=int((time.perf_counter() - started) * 1000),
            )
        finally:
            self._committing.discard((session_id, request_id))
            reset_correlation_id(token)

    @staticmethod
    def _failure(session_id: str, request_id: str, error: VoiceOrderingError, started: float) -> VoiceProcessingResult:
        return VoiceProcessingResult(
            session_id=session_id,
            request_id=request_id,
            success=False,
            error=error.message,
            error_code=error.code,
            retryable=bool(error.retryable),
            processing_time_ms=int((time.perf_counter() - started) * 1000),
        )

    async def _run_voice(
        self,
        audio: bytes,
        session_id: str,
        language: Optional[str],
        audio_format: str,
        synthesize: Optional[bool],
        request_id: str,
    ) -> VoiceProcessingResult:
        started = time.perf_counter()
        session = await self._registry.get_session(session_id)
        replay = self._completed.get((session_id, request_id))
        if replay is not None:
            return replay

        fmt = self._storage.normalize_format(audio_format)
        duration = self._storage.validate(audio, fmt)
        await self._limiter.check_voice_request(session.customer_id, session_id, audio_seconds=duration)

        if self._stt is None:
            raise ProviderFailure("stt", "speech-to-text is not configured", transient=False)
        if fmt == "pcm16":
            audio = pcm16_to_wav(audio, self._storage.pcm_sample_rate_hz)
            fmt = "wav"

        options: Dict[str, Any] = {"language": language} if language else {}
        async with self._storage.scoped(audio, fmt) as audio_path:
            transcription: Transcription = await self._call_provider(
                "stt", lambda: self._stt.transcribe(session_id, audio_path, options)
            )

        text = (transcription.text or "").strip()
        if not text:
            raise InvalidAudio("No speech detected in audio")

        return await self._commit_turn(
            session_id,
            text,
            request_id,
            started,
            confidence=transcription.confidence,
            synthesize=self._pipeline.synthesize_responses if synthesize is None else synthesize,
        )

    async def _run_text(self, text: str, session_id: str, synthesize: bool, request_id: str) -> VoiceProcessingResult:
        started = time.perf_counter()
        if not text or not text.strip():
            raise InvalidArgument("text must not be empty")
        session = await self._registry.get_session(session_id)
        replay = self._completed.get((session_id, request_id))
        if replay is not None:
            return replay
        await self._limiter.check_voice_request(session.customer_id, session_id)
        return await self._commit_turn(session_id, text.strip(), request_id, started, synthesize=synthesize)

    async def _commit_turn(
        self,
        session_id: str,
        text: str,
        request_id: str,
        started: float,
        *,
        confidence: Optional[float] = None,
        synthesize: bool = False,
    ) -> VoiceProcessingResult:
        async with self._registry.locked_session(session_id) as session:
            replay = self._completed.get((session_id, request_id))
            if replay is not None:
                logger.info("Request already applied; returning stored result", session_id=session_id, request_id=request_id)
                return replay

            history = self._log.history_locked(session_id, self._conversation.window_size)
            items_before = session.working_order.snapshot_items()
            committed = False
            try:
                update = self._intents.apply_intent(session, text, history)
                context = self._build_context(session, text, update)
                response = await self._call_provider(
                    "llm", lambda: self._llm.generate(session_id, text, context, {})
                )
                reply = (response.text or "").strip() or "Sorry, could you say that again?"
                elapsed_ms = int((time.perf_counter() - started) * 1000)
                self._committing.add((session_id, request_id))
                turn = self._log.append_locked(
                    session,
                    text,
                    reply,
                    intent=update.action.value,
                    transcription_confidence=confidence,
                    processing_time_ms=elapsed_ms,
                )
                committed = True
            finally:
                if not committed:
                    self._committing.discard((session_id, request_id))
                    # The turn did not complete; the order must not keep a partial mutation
                    session.working_order.items = items_before

            result = VoiceProcessingResult(
                session_id=session_id,
                request_id=request_id,
                success=True,
                transcription=text,
                ai_response=reply,
                order_update=update,
                turn_id=turn.turn_id,
                processing_time_ms=elapsed_ms,
            )
            self._remember(session_id, request_id, result)

        if synthesize and self._tts is not None:
            try:
                result.audio = await self.text_to_speech(reply, session_id)
            except VoiceOrderingError as e:
                logger.warning(
                    "Speech synthesis failed; returning text response only",
                    session_id=session_id,
                    request_id=request_id,
                    error=str(e),
                )
        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Voice interaction completed",
            session_id=session_id,
            request_id=request_id,
            turn_id=result.turn_id,
            action=update.action.value,
            order_updated=update.updated,
            processing_time_ms=result.processing_time_ms,
        )
        return result

    def _remember(self, session_id: str, request_id: str, result: VoiceProcessingResult) -> None:
        self._completed[(session_id, request_id)] = result
        while len(self._completed) > _MAX_REMEMBERED_REQUESTS:
            self._completed.popitem(last=False)

    def _build_context(self, session: VoiceSession, text: str, update: OrderUpdateResult) -> ResponseContext:
        return ResponseContext(
            session_id=session.session_id,
            system_prompt=self._conversation.system_prompt,
            menu_context=self._catalog.menu_context(focus_text=text),
            order_context=session.working_order.summary(),
            history=self._log.build_context_messages(session.session_id, self._conversation.window_size),
            order_update_message=update.message if update.action != OrderAction.NO_OP else None,
            max_tokens=self._conversation.max_response_tokens,
            temperature=self._conversation.temperature,
        )

    # ------------------------------------------------------------------ provider calls

    async def _call_provider(self, stage: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Rate-limit, time and retry one provider call.

        Transient ProviderFailures are retried with exponential backoff; a
        RateLimited denial is raised immediately without calling the provider.
        """

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "Retrying provider call after transient failure",
                stage=stage,
                attempt=state.attempt_number,
                error=str(exc),
            )

        delay = float(self._pipeline.retry_delay_seconds)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, int(self._pipeline.max_attempts))),
            wait=wait_exponential(multiplier=delay, min=delay, max=max(delay, self._pipeline.retry_max_delay_seconds)),
            retry=retry_if_exception(_is_transient),
            before_sleep=_before_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._limiter.acquire(f"provider:{stage}")
                started = time.perf_counter()
                try:
                    result = await call()
                except VoiceOrderingError:
                    raise
                except Exception as e:
                    raise ProviderFailure(stage, str(e) or type(e).__name__, transient=False) from e
                finally:
                    _STAGE_LATENCY.labels(stage=stage).observe(time.perf_counter() - started)
        return result
