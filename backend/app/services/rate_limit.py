"""Fixed-window per-user rate limiting over a pluggable counter store."""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Protocol

from redis import Redis
from redis.exceptions import RedisError

from app.config import Settings
from app.core.errors import RateLimited
from app.monitoring.metrics import rate_limited_requests_total

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    """Protocol describing the counter operations the limiter relies on."""

    def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        """Count one request for ``key``; return the count and seconds until the window resets."""


class InMemoryCounterStore:
    """Counter table for single-process deployments."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        now = self._clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
                self._purge(now)
            count += 1
            self._windows[key] = (count, reset_at)
        return count, reset_at - now

    def _purge(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if reset_at <= now]
        for key in expired:
            self._windows.pop(key, None)


class RedisCounterStore:
    """Counter table shared by every process pointing at the same Redis."""

    def __init__(self, client: Redis, *, prefix: str = "parley:ratelimit") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(Redis.from_url(url, decode_responses=True))

    def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        redis_key = f"{self._prefix}:{key}"
        pipe = self._client.pipeline()
        pipe.incr(redis_key)
        pipe.ttl(redis_key)
        count, ttl = pipe.execute()
        if ttl is None or ttl < 0:
            self._client.expire(redis_key, window_seconds)
            ttl = window_seconds
        return int(count), float(ttl)


class RateLimiter:
    """Allow at most ``max_requests`` per user in each window."""

    def __init__(self, store: CounterStore, *, max_requests: int, window_seconds: int) -> None:
        self._store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def check(self, user_id: str, action: str = "write") -> None:
        try:
            count, reset_in = self._store.hit(user_id, self.window_seconds)
        except RedisError as exc:
            logger.warning("Rate limit check failed, allowing request: %s", exc)
            return
        if count > self.max_requests:
            rate_limited_requests_total.labels(action).inc()
            raise RateLimited(retry_after=math.ceil(reset_in))


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Construct the process-wide limiter from settings."""

    if settings.rate_limit_redis_url:
        store: CounterStore = RedisCounterStore.from_url(settings.rate_limit_redis_url)
    else:
        store = InMemoryCounterStore()
    return RateLimiter(
        store,
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
