#!/usr/bin/env python3
"""
Moving-window rate limiters built on the `limits` library (the engine behind
slowapi).

SlidingWindowRateLimiter keeps its window in process memory; RedisRateLimiter
shares it across workers through limits' Redis storage, whose moving-window
hit is a single Lua script, so increment-and-check is atomic.

Usage:
    limiter = RedisRateLimiter('redis://localhost:6379/0', points=100, duration_seconds=60)
    decision = limiter.consume(user_id)
    if not decision.allowed:
        ...  # back off for decision.retry_after_seconds
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Optional

from limits import RateLimitItemPerSecond
from limits.errors import StorageError
from limits.storage import MemoryStorage, RedisStorage, Storage
from limits.strategies import MovingWindowRateLimiter
from redis import ConnectionPool
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: float = 0.0


class RateLimiter:
    """Consumes one point for a key inside a moving window held in a limits storage."""

    namespace = "notification"

    def __init__(self, storage: Storage, points: int, duration_seconds: float):
        if points < 1:
            raise ValueError("points must be >= 1")
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be > 0")
        self.points = points
        self.duration_seconds = duration_seconds
        self._item = RateLimitItemPerSecond(points, int(math.ceil(duration_seconds)))
        self._strategy = MovingWindowRateLimiter(storage)
        # hit and window stats are read as one step per process
        self._lock = threading.Lock()

    def consume(self, key: str) -> RateLimitDecision:
        try:
            with self._lock:
                allowed = self._strategy.hit(self._item, self.namespace, key)
                stats = self._strategy.get_window_stats(self._item, self.namespace, key)
        except (StorageError, RedisError) as e:
            logger.warning(f"Rate limiter backend unavailable, allowing {key}: {e}")
            return RateLimitDecision(True, self.points)

        if allowed:
            return RateLimitDecision(True, max(0, stats.remaining))
        return RateLimitDecision(False, 0, max(0.0, stats.reset_time - time.time()))

    def reset(self, key: str) -> None:
        self._strategy.clear(self._item, self.namespace, key)


class SlidingWindowRateLimiter(RateLimiter):
    """In-process limiter; limits' MemoryStorage expires idle keys in the background."""

    def __init__(self, points: int, duration_seconds: float):
        super().__init__(MemoryStorage(), points, duration_seconds)


class RedisRateLimiter(RateLimiter):
    """
    Limiter shared by every worker through Redis.

    Reuses an existing connection pool when given one. If Redis is unreachable
    the limiter fails open.
    """

    namespace = "notification:rate_limit:user"

    def __init__(self, redis_url: str, points: int, duration_seconds: float,
                 connection_pool: Optional[ConnectionPool] = None):
        storage = RedisStorage(redis_url, connection_pool=connection_pool, wrap_exceptions=True)
        super().__init__(storage, points, duration_seconds)
