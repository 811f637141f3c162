from __future__ import annotations

import asyncio
import hashlib
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Protocol

import redis.asyncio as aioredis

from synodic.logging import get_logger

logger = get_logger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter(Protocol):
    limit: int
    window_seconds: int

    async def hit(self, key: str) -> RateLimitDecision: ...

    async def close(self) -> None: ...


class SlidingWindowRateLimiter:
    """Per-key sliding window kept in process memory.

    Each key holds the timestamps of its accepted requests inside the window.
    Rejected requests are not recorded, so a client that keeps hammering
    regains access as soon as its oldest accepted request ages out.
    """

    def __init__(
        self,
        limit: int = 50,
        window_seconds: int = 900,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()
        self._last_sweep = clock()

    async def hit(self, key: str) -> RateLimitDecision:
        async with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            window = self._hits.setdefault(key, deque())
            self._prune(window, now)
            if len(window) >= self.limit:
                reset = window[0] + self.window_seconds - now
                return RateLimitDecision(
                    allowed=False,
                    limit=self.limit,
                    remaining=0,
                    reset_seconds=max(1, math.ceil(reset)),
                )
            window.append(now)
            reset = window[0] + self.window_seconds - now
            return RateLimitDecision(
                allowed=True,
                limit=self.limit,
                remaining=self.limit - len(window),
                reset_seconds=max(1, math.ceil(reset)),
            )

    def _prune(self, window: Deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def _maybe_sweep(self, now: float) -> None:
        # Drop idle keys once per window so memory tracks active clients only
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in list(self._hits):
            window = self._hits[key]
            self._prune(window, now)
            if not window:
                del self._hits[key]

    def tracked_keys(self) -> int:
        return len(self._hits)

    def reset(self) -> None:
        self._hits.clear()

    async def close(self) -> None:
        return None


class RedisRateLimiter:
    """Sliding window shared between instances through a Redis sorted set."""

    # Atomic prune + count + conditional add; scores are milliseconds
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local reset_after = window
if oldest[2] then
  reset_after = tonumber(oldest[2]) + window - now
end

if count >= limit then
  return {0, 0, reset_after}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
return {1, limit - count - 1, reset_after}
"""

    def __init__(
        self,
        redis_url: str,
        limit: int = 50,
        window_seconds: int = 900,
        *,
        socket_timeout: float = 5.0,
        client: aioredis.Redis | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._script = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _key(key: str) -> str:
        # Hashing keeps client-controlled text out of the Redis key space
        return f"rate:api:{hashlib.sha256(key.encode()).hexdigest()}"

    async def hit(self, key: str) -> RateLimitDecision:
        now_ms = int(self._clock() * 1000)
        window_ms = self.window_seconds * 1000
        allowed, remaining, reset_after_ms = await self._script(
            keys=[self._key(key)],
            args=[now_ms, window_ms, self.limit, f"{now_ms}-{uuid.uuid4().hex}"],
        )
        return RateLimitDecision(
            allowed=bool(int(allowed)),
            limit=self.limit,
            remaining=max(0, int(remaining)),
            reset_seconds=max(1, math.ceil(int(reset_after_ms) / 1000)),
        )

    async def close(self) -> None:
        await self.client.aclose()
