"""
Rate Limiter

Process-wide fixed-window counters shared by every session. Limits are keyed:

- ``global:minute`` / ``global:hour``: voice requests across all customers
- ``audio:hour``: seconds of submitted audio per hour
- ``customer:<id>`` / ``session:<id>``: per-customer and per-session request rates
- ``provider:stt`` / ``provider:llm`` / ``provider:tts``: outbound provider calls

A window holds ``capacity`` units; once ``window_seconds`` have elapsed since
the window opened it resets to empty. Acquisition across several keys is
all-or-nothing.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

import structlog
from prometheus_client import Counter

from ..config import RateLimitConfig
from .errors import RateLimited

logger = structlog.get_logger(__name__)

_RATE_LIMIT_REJECTIONS = Counter(
    "voice_ordering_rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["limit"],
)


@dataclass
class WindowCounter:
    capacity: int
    window_seconds: float
    window_start: float
    used: float = 0.0
    last_used: float = 0.0

    def roll(self, now: float) -> None:
        if now - self.window_start >= self.window_seconds:
            self.window_start = now
            self.used = 0.0

    def remaining(self, now: float) -> float:
        self.roll(now)
        return max(0.0, self.capacity - self.used)

    def reset_in(self, now: float) -> float:
        return max(0.0, self.window_seconds - (now - self.window_start))


class RateLimiter:
    def __init__(self, config: Optional[RateLimitConfig] = None, *, clock: Callable[[], float] = time.monotonic):
        self._config = config or RateLimitConfig()
        self._clock = clock
        self._counters: Dict[str, WindowCounter] = {}
        self._lock = asyncio.Lock()

        cfg = self._config
        self.configure("global:minute", cfg.requests_per_minute, 60.0)
        self.configure("global:hour", cfg.requests_per_hour, 3600.0)
        self.configure("audio:hour", cfg.audio_minutes_per_hour * 60, 3600.0)
        self.configure("provider:stt", cfg.stt_requests_per_minute, 60.0)
        self.configure("provider:llm", cfg.llm_requests_per_minute, 60.0)
        self.configure("provider:tts", cfg.tts_requests_per_minute, 60.0)

    @property
    def customer_limit_per_minute(self) -> int:
        return max(1, self._config.requests_per_minute // max(1, self._config.customer_divisor))

    def configure(self, key: str, capacity: int, window_seconds: float) -> None:
        """Register (or replace) the limit for ``key``."""
        self._counters[key] = WindowCounter(
            capacity=int(capacity),
            window_seconds=float(window_seconds),
            window_start=self._clock(),
        )

    def _counter(self, key: str) -> WindowCounter:
        counter = self._counters.get(key)
        if counter is None:
            counter = self._counters[key] = self._fresh_counter(key)
        return counter

    def _fresh_counter(self, key: str) -> WindowCounter:
        family = key.split(":", 1)[0]
        if family == "customer":
            capacity = self.customer_limit_per_minute
        elif family == "session":
            capacity = self._config.session_requests_per_minute
        else:
            raise KeyError(f"No rate limit configured for {key}")
        return WindowCounter(capacity=capacity, window_seconds=60.0, window_start=self._clock())

    async def acquire(self, key: str, cost: float = 1.0) -> None:
        """Consume ``cost`` units from ``key`` or raise RateLimited."""
        await self.acquire_many([(key, cost)])

    async def try_acquire(self, key: str, cost: float = 1.0) -> bool:
        try:
            await self.acquire(key, cost)
        except RateLimited:
            return False
        return True

    async def acquire_many(self, requests: Iterable[Tuple[str, float]]) -> None:
        """Consume from several keys atomically: all succeed or none is charged."""
        requests = list(requests)
        async with self._lock:
            now = self._clock()
            for key, cost in requests:
                counter = self._counter(key)
                if counter.remaining(now) < cost:
                    family = key.split(":", 1)[0]
                    _RATE_LIMIT_REJECTIONS.labels(limit=family if family in ("customer", "session") else key).inc()
                    logger.warning(
                        "Rate limit exceeded",
                        limit=key,
                        capacity=counter.capacity,
                        used=counter.used,
                        cost=cost,
                        retry_after=round(counter.reset_in(now), 2),
                    )
                    raise RateLimited(key, retry_after=counter.reset_in(now))
            for key, cost in requests:
                counter = self._counters[key]
                counter.used += cost
                counter.last_used = now

    async def check_voice_request(
        self,
        customer_id: Optional[str],
        session_id: Optional[str],
        audio_seconds: float = 0.0,
    ) -> None:
        """Admission check for one voice interaction."""
        requests = [("global:minute", 1.0), ("global:hour", 1.0)]
        if customer_id:
            requests.append((f"customer:{customer_id}", 1.0))
        if session_id:
            requests.append((f"session:{session_id}", 1.0))
        if audio_seconds > 0:
            requests.append(("audio:hour", float(audio_seconds)))
        await self.acquire_many(requests)

    def _describe(self, key: str, now: float) -> Dict[str, float]:
        # Reading a customer or session that never made a request must not create its counter
        counter = self._counters.get(key) or self._fresh_counter(key)
        remaining = counter.remaining(now)
        return {
            "capacity": counter.capacity,
            "remaining": round(remaining, 2),
            "reset_in_seconds": round(counter.reset_in(now), 2),
        }

    async def get_status(self, customer_id: Optional[str] = None, session_id: Optional[str] = None) -> Dict:
        async with self._lock:
            now = self._clock()
            status = {
                "global_minute": self._describe("global:minute", now),
                "global_hour": self._describe("global:hour", now),
                "audio_seconds_hour": self._describe("audio:hour", now),
                "providers": {
                    name: self._describe(f"provider:{name}", now) for name in ("stt", "llm", "tts")
                },
                "high_load": self._is_high_load(now),
            }
            if customer_id:
                status["customer"] = self._describe(f"customer:{customer_id}", now)
            if session_id:
                status["session"] = self._describe(f"session:{session_id}", now)
        return status

    def _is_high_load(self, now: float) -> bool:
        counter = self._counters["global:minute"]
        if counter.capacity <= 0:
            return True
        used_ratio = 1.0 - counter.remaining(now) / counter.capacity
        return used_ratio >= self._config.high_load_threshold

    async def is_high_load(self) -> bool:
        async with self._lock:
            return self._is_high_load(self._clock())

    async def cleanup_inactive(self, max_idle_seconds: Optional[float] = None) -> int:
        """Drop per-customer and per-session counters unused for ``max_idle_seconds``."""
        ttl = self._config.inactive_bucket_ttl_seconds if max_idle_seconds is None else max_idle_seconds
        async with self._lock:
            now = self._clock()
            stale = [
                key for key, counter in self._counters.items()
                if key.split(":", 1)[0] in ("customer", "session") and now - max(counter.last_used, counter.window_start) > ttl
            ]
            for key in stale:
                del self._counters[key]
        if stale:
            logger.debug("Removed inactive rate limit buckets", count=len(stale))
        return len(stale)

    def forget_session(self, session_id: str) -> None:
        self._counters.pop(f"session:{session_id}", None)
