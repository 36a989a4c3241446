"""Application service helpers."""

from .rate_limit import CounterStore, InMemoryCounterStore, RateLimiter, RedisCounterStore, build_rate_limiter

__all__ = [
    "CounterStore",
    "InMemoryCounterStore",
    "RateLimiter",
    "RedisCounterStore",
    "build_rate_limiter",
]
