"""Shared fixtures and fake provider components for the voice ordering tests."""

import asyncio
import io
import wave
from pathlib import Path
from typing import List, Optional

import pytest
import webrtcvad

from voice_ordering.config import (
    AudioConfig,
    ConversationConfig,
    PipelineConfig,
    RateLimitConfig,
    SessionConfig,
)
from voice_ordering.core.audio_storage import AudioStorage
from voice_ordering.core.catalog import InMemoryMenuCatalog, MenuItem
from voice_ordering.core.conversation_log import ConversationLog
from voice_ordering.core.intent_processor import OrderIntentProcessor
from voice_ordering.core.pipeline_coordinator import AudioPipelineCoordinator
from voice_ordering.core.rate_limiter import RateLimiter
from voice_ordering.core.session_registry import SessionRegistry
from voice_ordering.pipelines.base import (
    LLMComponent,
    LLMResponse,
    STTComponent,
    TTSComponent,
    Transcription,
)


MENU = [
    MenuItem("burger", "Classic Burger", 9.99, "Burgers", ["burger", "hamburger"]),
    MenuItem("fries", "French Fries", 3.49, "Sides", ["fries"]),
    MenuItem("soda", "Fountain Soda", 2.49, "Drinks", ["soda", "coke"]),
    MenuItem("salad", "Caesar Salad", 7.99, "Salads", ["salad"]),
]


def make_wav(seconds: float = 0.5, sample_rate: int = 16000) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(b"\x00\x00" * int(seconds * sample_rate))
    return buffer.getvalue()


class FakeSTT(STTComponent):
    component_key = "fake_stt"

    def __init__(self, text: str = "I'd like a burger", failures: Optional[List[Exception]] = None):
        self.text = text
        self.failures = list(failures or [])
        self.calls = 0
        self.paths: List[Path] = []
        self.existed: List[bool] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def transcribe(self, session_id, audio_path, options):
        self.calls += 1
        self.paths.append(Path(audio_path))
        self.existed.append(Path(audio_path).exists())
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        return Transcription(text=self.text, confidence=0.9)


class FakeLLM(LLMComponent):
    component_key = "fake_llm"

    def __init__(self, failures: Optional[List[Exception]] = None, delay: float = 0.0):
        self.failures = list(failures or [])
        self.delay = delay
        self.calls = 0
        self.contexts = []

    async def generate(self, session_id, transcript, context, options):
        self.calls += 1
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return LLMResponse(text=f"Sure. {context.order_update_message or 'What else?'}")


class FakeTTS(TTSComponent):
    component_key = "fake_tts"

    def __init__(self, failures: Optional[List[Exception]] = None, delay: float = 0.0):
        self.failures = list(failures or [])
        self.delay = delay
        self.calls = 0

    async def synthesize(self, session_id, text, options):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        yield b"audio:"
        yield text.encode("utf-8")


class FakeVad:
    """Stands in for webrtcvad.Vad: any nonzero sample counts as voice."""

    def __init__(self, mode: int = 1):
        self.mode = mode
        self.frames = []

    def is_speech(self, frame, sample_rate):
        if sample_rate not in (8000, 16000, 32000, 48000):
            raise ValueError(f"unsupported sample rate {sample_rate}")
        if len(frame) not in tuple(sample_rate * ms // 1000 * 2 for ms in (10, 20, 30)):
            raise ValueError(f"invalid frame length {len(frame)}")
        self.frames.append((len(frame), sample_rate))
        return any(frame)


@pytest.fixture
def catalog():
    return InMemoryMenuCatalog(MENU)


@pytest.fixture
def registry():
    return SessionRegistry(SessionConfig())


@pytest.fixture
def conversation_log(registry):
    return ConversationLog(registry)


@pytest.fixture
def intent_processor(registry, catalog, conversation_log):
    return OrderIntentProcessor(registry, catalog, conversation_log)


@pytest.fixture
def rate_limiter():
    return RateLimiter(
        RateLimitConfig(
            requests_per_minute=1000,
            requests_per_hour=10000,
            session_requests_per_minute=100,
            customer_divisor=1,
        )
    )


@pytest.fixture
def audio_storage(tmp_path):
    return AudioStorage(AudioConfig(temp_dir=str(tmp_path / "audio")))


@pytest.fixture
def fake_stt():
    return FakeSTT()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_tts():
    return FakeTTS()


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        max_attempts=3,
        retry_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        request_timeout_seconds=5.0,
        synthesize_responses=False,
    )


@pytest.fixture
def coordinator(
    registry,
    conversation_log,
    intent_processor,
    catalog,
    rate_limiter,
    audio_storage,
    fake_stt,
    fake_llm,
    fake_tts,
    pipeline_config,
):
    return AudioPipelineCoordinator(
        registry,
        conversation_log,
        intent_processor,
        catalog,
        rate_limiter,
        audio_storage,
        stt=fake_stt,
        llm=fake_llm,
        tts=fake_tts,
        pipeline_config=pipeline_config,
        conversation_config=ConversationConfig(),
    )


@pytest.fixture
def wav_factory():
    return make_wav


@pytest.fixture
def slow_llm():
    return FakeLLM(delay=1.0)


@pytest.fixture
def fake_vad(monkeypatch):
    """Every segmenter built while this fixture is active gets a FakeVad."""
    created = []

    def _factory(mode=1):
        vad = FakeVad(mode)
        created.append(vad)
        return vad

    monkeypatch.setattr(webrtcvad, "Vad", _factory)
    return created
