"""
Realtime Bridge

Maps realtime transport connections (websocket clients) onto voice sessions and
turns a stream of PCM16 frames into discrete voice interactions.

Connection state machine::

    LISTENING --segment ready--> PROCESSING --reply audio--> SPEAKING
        ^                            |                          |
        +------------ no audio ------+------- reply sent -------+

Frames that arrive while PROCESSING or SPEAKING are held in a backlog and fed to
the segmenter once the connection is LISTENING again.

A disconnect keeps the session ACTIVE; the connection mapping is removed after
``grace_period_seconds`` unless the client reconnects with the same session id.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import structlog
from prometheus_client import Gauge

from ..config import RealtimeConfig
from ..core.errors import InvalidArgument, SessionExpired, SessionNotFound
from ..core.models import ConnectionState, ConnectionStatus, RealtimeConnection, VoiceProcessingResult, VoiceSession
from ..core.pipeline_coordinator import AudioPipelineCoordinator
from ..core.session_registry import SessionRegistry
from .segmenter import SpeechSegmenter
from .tokens import EphemeralToken, EphemeralTokenIssuer

logger = structlog.get_logger(__name__)

_CONNECTED = Gauge(
    "voice_ordering_realtime_connections",
    "Realtime connections currently in CONNECTED status",
)

SpeakCallback = Callable[[VoiceProcessingResult], Awaitable[None]]


@dataclass
class _ConnectionSlot:
    connection: RealtimeConnection
    segmenter: SpeechSegmenter
    on_speak: Optional[SpeakCallback] = None
    backlog: Deque[bytes] = field(default_factory=deque)
    ready_segment: Optional[bytes] = None


class RealtimeBridge:
    def __init__(
        self,
        registry: SessionRegistry,
        coordinator: AudioPipelineCoordinator,
        token_issuer: EphemeralTokenIssuer,
        config: Optional[RealtimeConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._coordinator = coordinator
        self._tokens = token_issuer
        self._config = config or RealtimeConfig()
        self._clock = clock
        self._slots: Dict[str, _ConnectionSlot] = {}
        self._removals: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        registry.add_close_listener(self._on_session_closed)

    # ------------------------------------------------------------------ connections

    async def handle_connection(
        self,
        connection_id: str,
        customer_id: str,
        customer_email: Optional[str] = None,
        session_id: Optional[str] = None,
        *,
        on_speak: Optional[SpeakCallback] = None,
    ) -> str:
        """Bind ``connection_id`` to a usable session and return the session id.

        A ``session_id`` that is still ACTIVE and belongs to ``customer_id`` is
        reused (reconnect); otherwise a new session is created for ``customer_id``.
        """
        if not connection_id:
            raise InvalidArgument("connection_id must not be empty")

        reused = False
        if session_id:
            try:
                session = await self._registry.get_session(session_id)
                if session.customer_id == customer_id:
                    reused = True
                else:
                    logger.warning(
                        "Requested session belongs to another customer; starting a new one",
                        session_id=session_id,
                        connection_id=connection_id,
                    )
            except (SessionNotFound, SessionExpired) as e:
                logger.info(
                    "Requested session is not usable; starting a new one",
                    session_id=session_id,
                    connection_id=connection_id,
                    error=str(e),
                )
        if not reused:
            session_id = await self._registry.create_session(
                customer_id, customer_email, context={"channel": "realtime"}
            )

        async with self._lock:
            # A reconnect supersedes any mapping still waiting out its grace period
            for old_id, slot in list(self._slots.items()):
                if slot.connection.session_id == session_id and old_id != connection_id:
                    self._drop_locked(old_id)
            self._cancel_removal(connection_id)
            connection = RealtimeConnection(
                connection_id=connection_id,
                session_id=session_id,
                status=ConnectionStatus.CONNECTED,
                ephemeral_token_expiry=None,
                connected_at=self._clock(),
            )
            self._slots[connection_id] = _ConnectionSlot(
                connection=connection,
                segmenter=SpeechSegmenter.from_config(self._config),
                on_speak=on_speak,
            )
            self._update_gauge()

        logger.info(
            "Realtime connection established",
            connection_id=connection_id,
            session_id=session_id,
            reconnect=reused,
        )
        return session_id

    def _slot(self, connection_id: str) -> _ConnectionSlot:
        slot = self._slots.get(connection_id)
        if slot is None:
            raise InvalidArgument(f"Unknown realtime connection: {connection_id}")
        return slot

    async def handle_audio_frame(self, connection_id: str, frame: bytes) -> Optional[VoiceProcessingResult]:
        """Feed one PCM16 frame; returns the interaction result when a segment was processed."""
        slot = self._slot(connection_id)
        connection = slot.connection
        if connection.status != ConnectionStatus.CONNECTED:
            raise InvalidArgument(f"Realtime connection is not connected: {connection_id}")
        connection.frames_received += 1

        if connection.state != ConnectionState.LISTENING:
            slot.backlog.append(frame)
            return None

        segment = slot.ready_segment
        slot.ready_segment = None
        if segment is None:
            segment = slot.segmenter.push(frame)
        else:
            slot.backlog.append(frame)
        if segment is None:
            return None
        return await self._process_segment(slot, segment)

    async def flush(self, connection_id: str) -> Optional[VoiceProcessingResult]:
        """Process buffered speech immediately (client signalled end of input)."""
        slot = self._slot(connection_id)
        if slot.connection.state != ConnectionState.LISTENING:
            return None
        segment = slot.ready_segment or slot.segmenter.flush()
        slot.ready_segment = None
        if segment is None:
            return None
        return await self._process_segment(slot, segment)

    async def _process_segment(self, slot: _ConnectionSlot, segment: bytes) -> VoiceProcessingResult:
        connection = slot.connection
        connection.state = ConnectionState.PROCESSING
        connection.segments_submitted += 1
        try:
            result = await self._coordinator.process_voice_interaction(
                segment,
                connection.session_id,
                audio_format="pcm16",
                synthesize=True,
            )
            if result.success and slot.on_speak is not None:
                connection.state = ConnectionState.SPEAKING
                await slot.on_speak(result)
            return result
        finally:
            connection.state = ConnectionState.LISTENING
            self._drain_backlog(slot)

    def _drain_backlog(self, slot: _ConnectionSlot) -> None:
        while slot.backlog:
            segment = slot.segmenter.push(slot.backlog.popleft())
            if segment is not None and slot.ready_segment is None:
                slot.ready_segment = segment
                # Remaining frames stay queued behind the ready segment
                break

    async def handle_disconnection(self, connection_id: str) -> None:
        async with self._lock:
            slot = self._slots.get(connection_id)
            if slot is None:
                return
            connection = slot.connection
            connection.status = ConnectionStatus.DISCONNECTED
            connection.disconnected_at = self._clock()
            slot.segmenter.reset()
            slot.backlog.clear()
            slot.ready_segment = None
            slot.on_speak = None
            self._cancel_removal(connection_id)
            self._removals[connection_id] = asyncio.create_task(
                self._remove_after_grace(connection_id), name=f"realtime-grace-{connection_id}"
            )
            self._update_gauge()
        logger.info(
            "Realtime connection lost; session kept for reconnect",
            connection_id=connection_id,
            session_id=connection.session_id,
            grace_period_seconds=self._config.grace_period_seconds,
        )

    async def _remove_after_grace(self, connection_id: str) -> None:
        await asyncio.sleep(max(0.0, float(self._config.grace_period_seconds)))
        async with self._lock:
            self._removals.pop(connection_id, None)
            slot = self._slots.get(connection_id)
            if slot is not None and slot.connection.status == ConnectionStatus.DISCONNECTED:
                del self._slots[connection_id]
                logger.info(
                    "Realtime connection mapping removed after grace period",
                    connection_id=connection_id,
                    session_id=slot.connection.session_id,
                )

    def _cancel_removal(self, connection_id: str) -> None:
        task = self._removals.pop(connection_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _drop_locked(self, connection_id: str) -> None:
        self._cancel_removal(connection_id)
        self._slots.pop(connection_id, None)

    def _update_gauge(self) -> None:
        _CONNECTED.set(sum(1 for s in self._slots.values() if s.connection.status == ConnectionStatus.CONNECTED))

    def _on_session_closed(self, session: VoiceSession) -> None:
        for connection_id, slot in list(self._slots.items()):
            if slot.connection.session_id == session.session_id:
                self._cancel_removal(connection_id)
                del self._slots[connection_id]
        self._update_gauge()

    # ------------------------------------------------------------------ tokens and status

    async def generate_ephemeral_token(
        self,
        customer_id: str,
        session_type: str = "voice_ordering",
        session_id: Optional[str] = None,
    ) -> EphemeralToken:
        token = await self._tokens.issue(customer_id, session_type, voice_session_id=session_id)
        if session_id:
            for slot in self._slots.values():
                if slot.connection.session_id == session_id:
                    slot.connection.ephemeral_token_expiry = token.expires_at
        return token

    async def validate_token(self, value: str) -> bool:
        return await self._tokens.validate_token(value) is not None

    async def validate_session(self, session_id: str) -> bool:
        try:
            await self._registry.get_session(session_id)
        except (SessionNotFound, SessionExpired):
            return False
        return True

    def get_connection(self, connection_id: str) -> RealtimeConnection:
        return self._slot(connection_id).connection

    async def get_connection_status(self) -> Dict[str, Any]:
        active_sessions = await self._registry.list_active_sessions()
        return {
            "healthy": True,
            "active_connections": sum(
                1 for s in self._slots.values() if s.connection.status == ConnectionStatus.CONNECTED
            ),
            "active_sessions": len(active_sessions),
            "service_type": "realtime",
            "timestamp": self._clock(),
        }

    async def cleanup_expired(self) -> Dict[str, int]:
        tokens_removed = await self._tokens.cleanup_expired()
        stale = []
        async with self._lock:
            for connection_id, slot in list(self._slots.items()):
                if self._registry.get_tombstone(slot.connection.session_id) is not None:
                    self._drop_locked(connection_id)
                    stale.append(connection_id)
            self._update_gauge()
        if stale:
            logger.info("Removed realtime connections of closed sessions", count=len(stale))
        return {"tokens_removed": tokens_removed, "connections_removed": len(stale)}

    async def stop(self) -> None:
        tasks = list(self._removals.values())
        self._removals.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._slots.clear()
        self._update_gauge()
        await self._tokens.stop()
