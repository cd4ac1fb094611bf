import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Tuple
from uuid import uuid4

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # seconds until the oldest counted send leaves the window


class MemoryWindowStore:
    """Process-local send logs. Correct only for a single instance."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}

    async def hit(self, key: str, limit: int, window_seconds: int) -> Tuple[int, float]:
        """Record a send unless the window is already full.

        Returns (sends in the window including this attempt, seconds until the
        oldest counted send expires). Rejected attempts are not recorded.
        """
        now = self._clock()
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= now - window_seconds:
            hits.popleft()

        if len(hits) < limit:
            hits.append(now)
            count = len(hits)
        else:
            count = len(hits) + 1

        if len(self._hits) > 10_000:
            self._prune(now, window_seconds)
        return count, hits[0] + window_seconds - now

    def _prune(self, now: float, window_seconds: int) -> None:
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= now - window_seconds]:
            self._hits.pop(key, None)

    async def close(self) -> None:
        self._hits.clear()


class RedisWindowStore:
    """Shared send logs: one sorted set per user, scored by send time in milliseconds.

    Trim, add, count and expire run in one MULTI so every instance sees the
    same window. An attempt that lands over the limit is removed again.
    """

    def __init__(self, redis_client: Any, clock: Callable[[], float] = time.time):
        self.redis = redis_client
        self._clock = clock

    async def hit(self, key: str, limit: int, window_seconds: int) -> Tuple[int, float]:
        now_ms = int(self._clock() * 1000)
        window_ms = window_seconds * 1000
        member = f"{now_ms}:{uuid4().hex}"

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now_ms - window_ms)
            pipe.zadd(key, {member: now_ms})
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.pexpire(key, window_ms)
            _, _, count, oldest, _ = await pipe.execute()

        count = int(count)
        if count > limit:
            await self.redis.zrem(key, member)
        oldest_ms = oldest[0][1] if oldest else now_ms
        return count, max(oldest_ms + window_ms - now_ms, 0) / 1000

    async def close(self) -> None:
        pass


class RateLimiter:
    """Sliding-window limiter keyed by authenticated user.

    At most `limit` sends are accepted in any `window_seconds` span.
    """

    def __init__(self, store, limit: int = 30, window_seconds: int = 60, prefix: str = "rate-limit:messaging"):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    async def hit(self, identity: str) -> RateLimitResult:
        key = f"{self.prefix}:{identity}"
        try:
            count, retry_in = await self.store.hit(key, self.limit, self.window_seconds)
        except Exception:
            # Store down: let the request through rather than block all sends
            logger.exception(f"Rate limit store unavailable for {key}")
            return RateLimitResult(allowed=True, limit=self.limit, remaining=self.limit, retry_after=0)

        allowed = count <= self.limit
        result = RateLimitResult(
            allowed=allowed,
            limit=self.limit,
            remaining=max(self.limit - count, 0),
            retry_after=max(int(math.ceil(retry_in)), 1),
        )
        if not allowed:
            logger.warning(f"Rate limit exceeded for {key} ({self.limit} per {self.window_seconds}s)")
        return result

    async def close(self) -> None:
        await self.store.close()
