"""
Session Registry

Process-wide store of voice sessions. The registry owns every VoiceSession and
its WorkingOrder, hands out the per-session mutation lock, and reclaims idle
sessions with a background sweep.

Lifecycle:
1. ``SessionRegistry(config)`` is constructed explicitly by the service.
2. ``start()`` launches the idle sweep task.
3. ``stop()`` cancels the sweep and waits for it before the registry is dropped.

All state-mutating operations on a session (heartbeat, turn append, intent
processing, finalize, close, idle expiry) run inside ``locked_session()`` so
interleaved operations on the same session never lose updates. The session map
itself is guarded by a separate registry-wide lock.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional

import structlog
from prometheus_client import Counter, Gauge

from ..config import SessionConfig
from .errors import InvalidArgument, SessionExpired, SessionNotFound
from .models import SessionStatus, VoiceSession, WorkingOrder

logger = structlog.get_logger(__name__)

_ACTIVE_SESSIONS = Gauge(
    "voice_ordering_active_sessions",
    "Number of ACTIVE voice sessions held by the registry",
)
_SESSION_TRANSITIONS = Counter(
    "voice_ordering_session_transitions_total",
    "Voice session lifecycle transitions",
    ["transition"],
)

_MAX_TOMBSTONES = 10000

CloseListener = Callable[[VoiceSession], None]


@dataclass
class _Tombstone:
    status: SessionStatus
    reason: Optional[str]
    finalized_order_id: Optional[str]
    closed_at: float


class SessionRegistry:
    """In-memory registry of voice sessions with per-session locking."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        *,
        tax_rate: float = 0.0825,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config or SessionConfig()
        self._tax_rate = tax_rate
        self._clock = clock
        self._sessions: Dict[str, VoiceSession] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}
        # Closed/expired session ids, so late callers get SessionExpired instead of SessionNotFound
        self._tombstones: "OrderedDict[str, _Tombstone]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._close_listeners: List[CloseListener] = []
        self._sweep_task: Optional[asyncio.Task] = None
        self._stats = {"created": 0, "expired": 0, "closed": 0}

    @property
    def idle_timeout_seconds(self) -> float:
        return float(self._config.idle_timeout_minutes) * 60.0

    @property
    def max_turns(self) -> int:
        return int(self._config.max_turns)

    def now(self) -> float:
        return self._clock()

    def add_close_listener(self, listener: CloseListener) -> None:
        """Register a callback fired (synchronously) when a session is closed or expired."""
        self._close_listeners.append(listener)

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        if self._sweep_task and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="voice-session-idle-sweep")
        logger.info(
            "Session registry started",
            idle_timeout_minutes=self._config.idle_timeout_minutes,
            cleanup_interval_seconds=self._config.cleanup_interval_seconds,
            max_turns=self._config.max_turns,
        )

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Session registry stopped", active_sessions=len(self._sessions))

    async def _sweep_loop(self) -> None:
        interval = max(0.01, float(self._config.cleanup_interval_seconds))
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_idle_sessions()
            except Exception as e:
                # Next tick retries
                logger.error("Idle session sweep failed", error=str(e), exc_info=True)

    # ------------------------------------------------------------------ operations

    async def create_session(
        self,
        customer_id: str,
        customer_email: Optional[str] = None,
        context: Optional[Dict] = None,
    ) -> str:
        if not customer_id or not str(customer_id).strip():
            raise InvalidArgument("customer_id must not be empty")

        now = self._clock()
        session = VoiceSession(
            customer_id=str(customer_id).strip(),
            customer_email=customer_email,
            created_at=now,
            last_activity_at=now,
            working_order=WorkingOrder(tax_rate=self._tax_rate),
            context=dict(context or {}),
        )
        async with self._lock:
            self._sessions[session.session_id] = session
            self._session_locks[session.session_id] = asyncio.Lock()
            self._stats["created"] += 1
            _ACTIVE_SESSIONS.set(len(self._sessions))

        _SESSION_TRANSITIONS.labels(transition="created").inc()
        logger.info(
            "Voice session created",
            session_id=session.session_id,
            customer_id=session.customer_id,
        )
        return session.session_id

    async def get_session(self, session_id: str) -> VoiceSession:
        """Return a usable (ACTIVE) session.

        Raises:
            SessionNotFound: unknown id
            SessionExpired: the session was closed or expired
        """
        async with self._lock:
            return self._lookup(session_id)

    def _lookup(self, session_id: str) -> VoiceSession:
        session = self._sessions.get(session_id)
        if session is None:
            tombstone = self._tombstones.get(session_id)
            if tombstone is not None:
                raise SessionExpired(session_id, tombstone.status.value)
            raise SessionNotFound(session_id)
        if not session.is_active:
            raise SessionExpired(session_id, session.status.value)
        return session

    def get_tombstone(self, session_id: str) -> Optional[_Tombstone]:
        return self._tombstones.get(session_id)

    @asynccontextmanager
    async def locked_session(self, session_id: str) -> AsyncIterator[VoiceSession]:
        """Acquire the per-session lock and yield the usable session.

        The session is looked up again after the lock is acquired, so a caller
        that queued behind a close or expiry gets SessionExpired.
        """
        async with self._lock:
            lock = self._session_locks.get(session_id)
            if lock is None:
                self._lookup(session_id)
                raise SessionNotFound(session_id)
        async with lock:
            async with self._lock:
                session = self._lookup(session_id)
            yield session

    async def heartbeat(self, session_id: str) -> VoiceSession:
        try:
            async with self.locked_session(session_id) as session:
                session.touch(self._clock())
                return session
        except SessionExpired as e:
            # Heartbeats only apply to ACTIVE sessions
            raise SessionNotFound(session_id) from e

    async def close_session(self, session_id: str, reason: str = "closed") -> bool:
        """Close a session. Idempotent: returns False if it was already closed."""
        try:
            async with self.locked_session(session_id) as session:
                self.mark_closed(session, reason)
                return True
        except SessionExpired:
            logger.debug("Close requested for already closed session", session_id=session_id, reason=reason)
            return False

    def mark_closed(
        self,
        session: VoiceSession,
        reason: str,
        *,
        status: SessionStatus = SessionStatus.CLOSED,
    ) -> None:
        """Transition a session out of ACTIVE and evict it.

        Callers must hold the session's lock (see ``locked_session``).
        """
        if not session.is_active:
            return
        session.status = status
        session.close_reason = reason
        session.closed_at = self._clock()
        self._evict(session)

        transition = "expired" if status == SessionStatus.EXPIRED else "closed"
        self._stats[transition] += 1
        _SESSION_TRANSITIONS.labels(transition=transition).inc()
        logger.info(
            f"Voice session {transition}",
            session_id=session.session_id,
            reason=reason,
            turn_count=session.turn_count,
            order_items=len(session.working_order.items),
        )

        for listener in list(self._close_listeners):
            try:
                listener(session)
            except Exception as e:
                logger.error(
                    "Session close listener failed",
                    session_id=session.session_id,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                    exc_info=True,
                )

    def _evict(self, session: VoiceSession) -> None:
        # Called with the session lock held; the map edit itself is synchronous
        self._sessions.pop(session.session_id, None)
        self._session_locks.pop(session.session_id, None)
        self._tombstones[session.session_id] = _Tombstone(
            status=session.status,
            reason=session.close_reason,
            finalized_order_id=session.finalized_order_id,
            closed_at=session.closed_at or self._clock(),
        )
        while len(self._tombstones) > _MAX_TOMBSTONES:
            self._tombstones.popitem(last=False)
        _ACTIVE_SESSIONS.set(len(self._sessions))

    def record_turn(self, session: VoiceSession) -> bool:
        """Count a completed turn and refresh activity.

        Callers must hold the session's lock. Returns True when the session hit
        the turn ceiling and was closed.
        """
        session.turn_count += 1
        session.touch(self._clock())
        if self.max_turns > 0 and session.turn_count >= self.max_turns:
            logger.warning(
                "Voice session reached maximum turns",
                session_id=session.session_id,
                turn_count=session.turn_count,
                max_turns=self.max_turns,
            )
            self.mark_closed(session, "max_turns_exceeded")
            return True
        return False

    async def sweep_idle_sessions(self) -> List[str]:
        """Expire and evict ACTIVE sessions idle longer than the timeout.

        Candidates are selected from a snapshot; each is re-checked under its
        own lock so a concurrent heartbeat or turn wins the race.
        """
        timeout = self.idle_timeout_seconds
        async with self._lock:
            candidates = [s.session_id for s in self._sessions.values() if s.is_active]

        expired: List[str] = []
        for session_id in candidates:
            try:
                async with self.locked_session(session_id) as session:
                    if session.idle_seconds(self._clock()) > timeout:
                        self.mark_closed(session, "idle_timeout", status=SessionStatus.EXPIRED)
                        expired.append(session_id)
            except (SessionNotFound, SessionExpired):
                continue

        if expired:
            logger.info("Expired idle voice sessions", count=len(expired), idle_timeout_seconds=timeout)
        return expired

    # ------------------------------------------------------------------ read-only views

    async def list_active_sessions(self) -> List[VoiceSession]:
        async with self._lock:
            snapshot = list(self._sessions.values())
        return [s for s in snapshot if s.is_active]

    async def get_session_statistics(self) -> Dict[str, float]:
        sessions = await self.list_active_sessions()
        now = self._clock()
        active = len(sessions)
        total_turns = sum(s.turn_count for s in sessions)
        oldest_age_minutes = 0.0
        if sessions:
            oldest_age_minutes = (now - min(s.created_at for s in sessions)) / 60.0
        return {
            "active_session_count": active,
            "average_turns_per_session": (total_turns / active) if active else 0.0,
            "oldest_session_age_minutes": round(oldest_age_minutes, 2),
            "sessions_created": self._stats["created"],
            "sessions_expired": self._stats["expired"],
            "sessions_closed": self._stats["closed"],
        }
