"""
Rate Limiter - sliding window request throttling

Counters are keyed by (endpoint class, attempt, user, origin) where origin is
the client IP for HTTP calls and the connection id for realtime events.
Two stores are available: a process-local one (default) and a Redis sorted-set
one for deployments running several API processes.
"""
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..core.config import settings
from ..utils.timezone import SystemClock, to_iso

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)


def _seconds(moment: datetime) -> float:
    return (moment - _EPOCH).total_seconds()


@dataclass
class RateLimitResult:
    allowed: bool
    limit: Optional[int]
    remaining: Optional[int]
    reset_at: Optional[datetime]

    def headers(self) -> Dict[str, str]:
        if self.limit is None:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if self.reset_at is not None:
            headers["X-RateLimit-Reset"] = to_iso(self.reset_at)
        return headers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": to_iso(self.reset_at),
        }


class InMemoryRateLimitStore:
    """Process-local sliding windows.

    ``hit`` never awaits, so a check-and-record is atomic with respect to
    other coroutines on the same event loop.
    """

    def __init__(self):
        self._entries: Dict[str, Dict[str, Any]] = {}

    async def hit(self, key: str, now: float, window_seconds: int, max_requests: int) -> int:
        """Record the request if under the limit; returns the count seen before it."""
        window_start = now - window_seconds
        entry = self._entries.get(key)
        if entry is None or entry["expires_at"] < now:
            entry = {"requests": [], "expires_at": now + window_seconds}
            self._entries[key] = entry

        entry["requests"] = [ts for ts in entry["requests"] if ts > window_start]
        count = len(entry["requests"])
        if count < max_requests:
            entry["requests"].append(now)
            entry["expires_at"] = now + window_seconds
        return count

    async def sweep(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry["expires_at"] < now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisRateLimitStore:
    """Sorted set per key, scored by request time; keys expire with their window."""

    def __init__(self, cache_manager, key_prefix: str = "rate_limit"):
        self.cache = cache_manager
        self.key_prefix = key_prefix

    async def hit(self, key: str, now: float, window_seconds: int, max_requests: int) -> int:
        client = await self.cache.get_async_client()
        redis_key = f"{self.key_prefix}:{key}"

        pipe = client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
        pipe.zcard(redis_key)
        _, count = await pipe.execute()

        if count < max_requests:
            pipe = client.pipeline()
            pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.expire(redis_key, window_seconds + 1)
            await pipe.execute()
        return count

    async def sweep(self, now: float) -> int:
        return 0


class RateLimiter:
    def __init__(
        self,
        store=None,
        limits: Optional[Dict[str, Dict[str, int]]] = None,
        clock=None,
        sweep_probability: Optional[float] = None,
        random_fn: Callable[[], float] = random.random,
    ):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.limits = limits or settings.rate_limits
        self.clock = clock or SystemClock()
        self.sweep_probability = (
            settings.rate_limit_sweep_probability if sweep_probability is None else sweep_probability
        )
        self._random = random_fn

    @staticmethod
    def make_key(endpoint_class: str, attempt_id, user_id, origin) -> str:
        return f"{endpoint_class}:{attempt_id}:{user_id}:{origin}"

    async def check(self, endpoint_class: str, attempt_id, user_id, origin) -> RateLimitResult:
        config = self.limits.get(endpoint_class)
        if not config:
            return RateLimitResult(True, None, None, None)

        now_dt = self.clock.now()
        now = _seconds(now_dt)
        max_requests = config["max_requests"]
        window_seconds = config["window_seconds"]

        if self._random() < self.sweep_probability:
            await self.sweep()

        key = self.make_key(endpoint_class, attempt_id, user_id, origin)
        try:
            count = await self.store.hit(key, now, window_seconds, max_requests)
        except Exception as e:
            # counters are not integrity-critical: fail open
            logger.error(f"Rate limit store error for {endpoint_class}: {e}")
            return RateLimitResult(True, max_requests, max_requests, None)

        allowed = count < max_requests
        remaining = max(0, max_requests - count - (1 if allowed else 0))
        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            remaining=remaining,
            reset_at=now_dt + timedelta(seconds=window_seconds),
        )

    async def sweep(self) -> int:
        removed = await self.store.sweep(_seconds(self.clock.now()))
        if removed:
            logger.debug(f"Rate limiter swept {removed} expired entries")
        return removed


def build_rate_limiter(clock=None) -> RateLimiter:
    if settings.rate_limit_backend == "redis":
        from ..core.cache import cache
        return RateLimiter(store=RedisRateLimitStore(cache), clock=clock)
    return RateLimiter(clock=clock)
