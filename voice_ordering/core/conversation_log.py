"""
Conversation Log

Branchable turn history per voice session, stored as an arena of turns indexed
by id. Each turn records its parent id; the active path is rebuilt by walking
parent ids back from the active leaf.

The active leaf is the most recently created turn of the session, whichever
branch it sits on. ``add_turn`` extends that leaf; ``add_branched_turn`` may
attach to any earlier turn, which makes the new turn the active leaf while the
abandoned branch stays in the arena.
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from .errors import TurnNotFound
from .models import ConversationTurn, VoiceSession
from .session_registry import SessionRegistry

logger = structlog.get_logger(__name__)


@dataclass
class _SessionTurns:
    turns: Dict[int, ConversationTurn] = field(default_factory=dict)
    active_leaf: Optional[int] = None


class ConversationLog:
    """Per-session turn arenas.

    Turn ids come from one counter per log, so an id names exactly one turn
    across all sessions and a parent id from another session is never found.

    Turn appends go through the registry's per-session lock and bump the
    session's ``turn_count`` in the same critical section, so the count always
    equals the number of recorded turns.
    """

    def __init__(self, registry: SessionRegistry):
        self._registry = registry
        self._arenas: Dict[str, _SessionTurns] = {}
        self._turn_ids = itertools.count(1)
        registry.add_close_listener(self._on_session_closed)

    def _on_session_closed(self, session: VoiceSession) -> None:
        self.drop_session(session.session_id)

    # ------------------------------------------------------------------ writes

    async def add_turn(self, session_id: str, user_message: str, ai_response: str, **metadata: Any) -> ConversationTurn:
        async with self._registry.locked_session(session_id) as session:
            return self.append_locked(session, user_message, ai_response, **metadata)

    async def add_branched_turn(
        self,
        session_id: str,
        parent_turn_id: int,
        user_message: str,
        ai_response: str,
        **metadata: Any,
    ) -> ConversationTurn:
        async with self._registry.locked_session(session_id) as session:
            return self.append_locked(session, user_message, ai_response, parent_turn_id=parent_turn_id, **metadata)

    def append_locked(
        self,
        session: VoiceSession,
        user_message: str,
        ai_response: str,
        *,
        parent_turn_id: Optional[int] = None,
        intent: Optional[str] = None,
        transcription_confidence: Optional[float] = None,
        processing_time_ms: Optional[int] = None,
    ) -> ConversationTurn:
        """Append a turn for a session whose lock the caller already holds.

        ``parent_turn_id=None`` means "extend the active leaf".
        """
        arena = self._arenas.setdefault(session.session_id, _SessionTurns())

        if parent_turn_id is None:
            parent_id = arena.active_leaf
        else:
            if parent_turn_id not in arena.turns:
                raise TurnNotFound(session.session_id, parent_turn_id)
            parent_id = parent_turn_id

        depth = arena.turns[parent_id].turn_number + 1 if parent_id is not None else 1
        turn = ConversationTurn(
            turn_id=next(self._turn_ids),
            session_id=session.session_id,
            parent_turn_id=parent_id,
            user_message=user_message or "",
            ai_response=ai_response or "",
            turn_number=depth,
            timestamp=time.time(),
            intent=intent,
            transcription_confidence=transcription_confidence,
            processing_time_ms=processing_time_ms,
        )
        arena.turns[turn.turn_id] = turn
        arena.active_leaf = turn.turn_id

        if parent_turn_id is not None:
            logger.info(
                "Branched conversation turn",
                session_id=session.session_id,
                turn_id=turn.turn_id,
                parent_turn_id=parent_turn_id,
            )
        # May close the session at the turn ceiling, which drops this arena
        self._registry.record_turn(session)
        return turn

    def drop_session(self, session_id: str) -> None:
        self._arenas.pop(session_id, None)

    # ------------------------------------------------------------------ reads

    def _arena(self, session_id: str) -> _SessionTurns:
        return self._arenas.get(session_id) or _SessionTurns()

    def _path_to(self, arena: _SessionTurns, leaf_id: Optional[int]) -> List[ConversationTurn]:
        path: List[ConversationTurn] = []
        current = leaf_id
        while current is not None:
            turn = arena.turns[current]
            path.append(turn)
            current = turn.parent_turn_id
        path.reverse()
        return path

    def history_locked(self, session_id: str, window_size: int = 0) -> List[ConversationTurn]:
        arena = self._arena(session_id)
        path = self._path_to(arena, arena.active_leaf)
        if window_size and window_size > 0:
            return path[-window_size:]
        return path

    async def get_history(self, session_id: str, window_size: int = 0) -> List[ConversationTurn]:
        """Root-to-active-leaf path, last ``window_size`` turns (0 = full path)."""
        # Validates the session and gives a consistent snapshot (no partial turn)
        async with self._registry.locked_session(session_id):
            return list(self.history_locked(session_id, window_size))

    def get_turn(self, session_id: str, turn_id: int) -> ConversationTurn:
        turn = self._arena(session_id).turns.get(turn_id)
        if turn is None:
            raise TurnNotFound(session_id, turn_id)
        return turn

    def get_children(self, session_id: str, turn_id: int) -> List[ConversationTurn]:
        arena = self._arena(session_id)
        if turn_id not in arena.turns:
            raise TurnNotFound(session_id, turn_id)
        return [t for t in arena.turns.values() if t.parent_turn_id == turn_id]

    def all_turns(self, session_id: str) -> List[ConversationTurn]:
        return sorted(self._arena(session_id).turns.values(), key=lambda t: t.turn_id)

    def turn_count(self, session_id: str) -> int:
        return len(self._arena(session_id).turns)

    def branch_count(self, session_id: str) -> int:
        """Number of leaves in the session's turn tree."""
        arena = self._arena(session_id)
        parents = {t.parent_turn_id for t in arena.turns.values()}
        return sum(1 for turn_id in arena.turns if turn_id not in parents)

    def active_leaf(self, session_id: str) -> Optional[int]:
        return self._arena(session_id).active_leaf

    def build_context_messages(self, session_id: str, window_size: int) -> List[Dict[str, str]]:
        """Render the active path as chat messages for response generation."""
        messages: List[Dict[str, str]] = []
        for turn in self.history_locked(session_id, window_size):
            if turn.user_message:
                messages.append({"role": "user", "content": turn.user_message})
            if turn.ai_response:
                messages.append({"role": "assistant", "content": turn.ai_response})
        return messages

    async def get_session_analytics(self, session_id: str) -> Dict[str, Any]:
        """Turn and timing figures for one live session.

        Averages cover the turns that carry the value and are ``None`` when no
        turn does. ``duration_seconds`` runs from creation to last activity.
        """
        async with self._registry.locked_session(session_id) as session:
            arena = self._arena(session_id)
            turns = list(arena.turns.values())
            active_path = len(self._path_to(arena, arena.active_leaf))
            timings = [t.processing_time_ms for t in turns if t.processing_time_ms is not None]
            confidences = [t.transcription_confidence for t in turns if t.transcription_confidence is not None]
            return {
                "session_id": session_id,
                "total_turns": len(turns),
                "active_path_turns": active_path,
                "abandoned_turns": len(turns) - active_path,
                "branch_count": self.branch_count(session_id),
                "duration_seconds": max(0.0, session.last_activity_at - session.created_at),
                "average_processing_time_ms": sum(timings) / len(timings) if timings else None,
                "average_confidence": sum(confidences) / len(confidences) if confidences else None,
            }
