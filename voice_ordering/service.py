"""
Service assembly.

``VoiceOrderingService`` builds every component from an ``AppConfig``, owns
their lifecycle and is the single object the HTTP layer talks to. Nothing in
the package is a module-level singleton; tests build a service (or individual
components) directly.
"""

from __future__ import annotations

from typing import Optional

import structlog

from .config import AppConfig
from .core.audio_storage import AudioStorage
from .core.catalog import InMemoryMenuCatalog, InMemoryOrderStore, MenuCatalog, OrderStore
from .core.conversation_log import ConversationLog
from .core.intent_processor import OrderIntentProcessor
from .core.order_finalizer import OrderFinalizer
from .core.pipeline_coordinator import AudioPipelineCoordinator
from .core.rate_limiter import RateLimiter
from .core.session_registry import SessionRegistry
from .pipelines.base import LLMComponent, STTComponent, TTSComponent
from .pipelines.openai import OpenAILLMAdapter, OpenAISTTAdapter, OpenAITTSAdapter
from .pipelines.template import TemplateResponseGenerator
from .realtime.bridge import RealtimeBridge
from .realtime.tokens import EphemeralTokenIssuer

logger = structlog.get_logger(__name__)


class VoiceOrderingService:
    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        catalog: Optional[MenuCatalog] = None,
        order_store: Optional[OrderStore] = None,
        stt: Optional[STTComponent] = None,
        llm: Optional[LLMComponent] = None,
        tts: Optional[TTSComponent] = None,
        token_issuer: Optional[EphemeralTokenIssuer] = None,
    ):
        self.config = config or AppConfig()
        cfg = self.config

        self.registry = SessionRegistry(cfg.session, tax_rate=cfg.order.tax_rate)
        self.conversation_log = ConversationLog(self.registry)
        self.catalog = catalog or InMemoryMenuCatalog.from_config(cfg.menu)
        self.order_store = order_store or InMemoryOrderStore()
        self.rate_limiter = RateLimiter(cfg.rate_limit)
        self.audio_storage = AudioStorage(cfg.audio)
        self.intent_processor = OrderIntentProcessor(
            self.registry,
            self.catalog,
            self.conversation_log,
            history_window=cfg.conversation.window_size,
        )

        if stt is None and llm is None and tts is None:
            stt, llm, tts = self._build_provider_components()
        self.speech_enabled = stt is not None
        self.coordinator = AudioPipelineCoordinator(
            self.registry,
            self.conversation_log,
            self.intent_processor,
            self.catalog,
            self.rate_limiter,
            self.audio_storage,
            stt=stt,
            llm=llm or TemplateResponseGenerator(),
            tts=tts,
            pipeline_config=cfg.pipeline,
            conversation_config=cfg.conversation,
        )
        self.finalizer = OrderFinalizer(self.registry, self.order_store, cfg.order)
        self.token_issuer = token_issuer or EphemeralTokenIssuer(cfg.realtime, cfg.providers.openai)
        self.bridge = RealtimeBridge(self.registry, self.coordinator, self.token_issuer, cfg.realtime)
        self._started = False

    def _build_provider_components(self):
        openai_cfg = self.config.providers.openai
        if not openai_cfg.api_key:
            logger.warning(
                "OPENAI_API_KEY not set; speech features disabled and replies built from templates",
            )
            return None, TemplateResponseGenerator(), None
        return (
            OpenAISTTAdapter("openai_stt", openai_cfg),
            OpenAILLMAdapter("openai_llm", openai_cfg),
            OpenAITTSAdapter("openai_tts", openai_cfg),
        )

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        await self.registry.start()
        await self.audio_storage.start()
        await self.coordinator.start()
        self._started = True
        logger.info(
            "Voice ordering service started",
            menu_items=len(self.catalog.list_items()),
            idle_timeout_minutes=self.config.session.idle_timeout_minutes,
            max_turns=self.config.session.max_turns,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.bridge.stop()
        await self.coordinator.stop()
        await self.audio_storage.stop()
        await self.registry.stop()
        logger.info("Voice ordering service stopped")
