"""
Provider component contracts for the voice pipeline.

The AudioPipelineCoordinator talks to speech-to-text, response generation and
text-to-speech providers only through these interfaces. Concrete adapters live
beside this module (``openai.py`` for the hosted APIs, ``template.py`` for the
offline response generator).

Adapters signal failures with ``ProviderFailure``; ``transient=True`` marks
failures worth retrying (timeouts, throttling, 5xx).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional


@dataclass
class Transcription:
    text: str
    language: Optional[str] = None
    confidence: Optional[float] = None
    duration_seconds: Optional[float] = None


@dataclass
class LLMResponse:
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResponseContext:
    """Everything the response generator sees for one turn."""
    session_id: str
    system_prompt: str
    menu_context: str
    order_context: str
    history: List[Dict[str, str]] = field(default_factory=list)
    order_update_message: Optional[str] = None
    max_tokens: int = 500
    temperature: float = 0.7


class Component(ABC):
    """Lifecycle shared by all provider components."""

    component_key: str = "component"

    async def start(self) -> None:
        """Allocate long-lived resources (HTTP sessions, warm caches)."""

    async def stop(self) -> None:
        """Release resources allocated by ``start``."""

    async def open_call(self, session_id: str, options: Dict[str, Any]) -> None:
        """Hook invoked before the first request for a session."""

    async def close_call(self, session_id: str) -> None:
        """Hook invoked when a session ends."""


class STTComponent(Component):
    @abstractmethod
    async def transcribe(
        self,
        session_id: str,
        audio_path: Path,
        options: Dict[str, Any],
    ) -> Transcription:
        """Transcribe the audio file at ``audio_path``."""


class LLMComponent(Component):
    @abstractmethod
    async def generate(
        self,
        session_id: str,
        transcript: str,
        context: ResponseContext,
        options: Dict[str, Any],
    ) -> LLMResponse:
        """Produce the assistant's reply to ``transcript``."""


class TTSComponent(Component):
    @abstractmethod
    def synthesize(
        self,
        session_id: str,
        text: str,
        options: Dict[str, Any],
    ) -> AsyncIterator[bytes]:
        """Yield synthesized audio chunks for ``text``."""
