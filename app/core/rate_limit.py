from __future__ import annotations

import time
import uuid
from dataclasses import dataclass

from redis import Redis

from app.core.config import settings


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_s: float = 0.0


class SlidingWindowRateLimiter:
    """At most `max_jobs` per `window_ms` per key, on a Redis sorted set.

    Each admitted job adds a member scored by its timestamp; members older than
    the window are pruned first. A job that pushes the count over the limit is
    removed again and told how long until the oldest member leaves the window.
    """

    def __init__(self, client: Redis, *, max_jobs: int, window_ms: int, prefix: str = "ratelimit"):
        self.client = client
        self.max_jobs = max_jobs
        self.window_ms = window_ms
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def acquire(self, key: str, *, now_ms: float | None = None) -> RateDecision:
        now_ms = time.time() * 1000 if now_ms is None else now_ms
        rkey = self._key(key)
        member = f"{now_ms}:{uuid.uuid4().hex}"

        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(rkey, 0, now_ms - self.window_ms)
        pipe.zadd(rkey, {member: now_ms})
        pipe.zcard(rkey)
        pipe.pexpire(rkey, self.window_ms)
        _, _, count, _ = pipe.execute()

        if count <= self.max_jobs:
            return RateDecision(allowed=True)

        self.client.zrem(rkey, member)
        oldest = self.client.zrange(rkey, 0, 0, withscores=True)
        if oldest:
            retry_after_ms = max(0.0, oldest[0][1] + self.window_ms - now_ms)
        else:
            retry_after_ms = float(self.window_ms)
        return RateDecision(allowed=False, retry_after_s=retry_after_ms / 1000.0)


_redis: Redis | None = None


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(settings.REDIS_URL, socket_connect_timeout=2, socket_timeout=2)
    return _redis


def send_limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(
        get_redis(), max_jobs=settings.LIMITER_MAX, window_ms=settings.LIMITER_DURATION_MS, prefix="ratelimit:send"
    )
