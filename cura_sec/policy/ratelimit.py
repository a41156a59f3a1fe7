"""
Rate limiting for CuraNet
Fixed-window counters behind a pluggable backend
"""

from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol, Tuple
import math
import threading
import structlog
import redis

from ..exceptions import RateLimitExceededError
from ..utils.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)


class RateLimitBackend(Protocol):
    def hit(self, key: str, window_seconds: int, now: datetime) -> Tuple[int, datetime]:
        """Count one hit and return (hits in window, window end)"""
        ...

    def reset(self, key: str) -> None:
        ...


class InMemoryRateLimitBackend:
    """Single-process backend"""

    def __init__(self):
        self._windows: Dict[str, Tuple[int, datetime]] = {}
        self._lock = threading.Lock()
        self._next_sweep: Optional[datetime] = None

    @property
    def size(self) -> int:
        """Number of tracked windows"""
        with self._lock:
            return len(self._windows)

    def _sweep(self, window_seconds: int, now: datetime) -> None:
        # Full scan at most once per window
        if self._next_sweep is not None and now < self._next_sweep:
            return
        expired = [key for key, (_, window_end) in self._windows.items() if window_end <= now]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + timedelta(seconds=window_seconds)
        if expired:
            logger.debug("Evicted expired rate limit windows", count=len(expired))

    def hit(self, key: str, window_seconds: int, now: datetime) -> Tuple[int, datetime]:
        with self._lock:
            self._sweep(window_seconds, now)
            count, window_end = self._windows.get(key, (0, now))
            if window_end <= now:
                count, window_end = 0, now + timedelta(seconds=window_seconds)
            count += 1
            self._windows[key] = (count, window_end)
            return count, window_end

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


class RedisRateLimitBackend:
    """Shared backend for multi-instance deployments"""

    def __init__(self, client: Optional[redis.Redis] = None,
                 redis_url: str = "redis://localhost:6379/0",
                 key_prefix: str = "cura_sec:ratelimit"):
        self.client = client or redis.Redis.from_url(redis_url, decode_responses=True)
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def hit(self, key: str, window_seconds: int, now: datetime) -> Tuple[int, datetime]:
        redis_key = self._key(key)
        pipe = self.client.pipeline()
        pipe.incr(redis_key)
        # Only the first hit in a window sets the expiry
        pipe.expire(redis_key, window_seconds, nx=True)
        pipe.ttl(redis_key)
        count, _, ttl = pipe.execute()

        remaining = ttl if ttl and ttl > 0 else window_seconds
        return int(count), now + timedelta(seconds=remaining)

    def reset(self, key: str) -> None:
        self.client.delete(self._key(key))


class RateLimiter:
    """Allows ``limit`` hits per key in each ``window_seconds`` window"""

    def __init__(self, limit: int, window_seconds: int,
                 backend: Optional[RateLimitBackend] = None,
                 clock: Optional[Clock] = None,
                 name: str = "default"):
        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.backend = backend if backend is not None else InMemoryRateLimitBackend()
        self.clock = clock or SystemClock()
        self.name = name

    def _scoped(self, key: str) -> str:
        return f"{self.name}:{key}"

    def check(self, key: str) -> None:
        """
        Count a hit for key.

        Raises:
            RateLimitExceededError: key is over its budget for the current window
        """
        now = self.clock.now()
        count, window_end = self.backend.hit(self._scoped(key), self.window_seconds, now)
        if count > self.limit:
            retry_after = max(1, math.ceil((window_end - now).total_seconds()))
            logger.warning("Rate limit exceeded",
                           limiter=self.name,
                           key=key,
                           count=count,
                           limit=self.limit,
                           retry_after_seconds=retry_after)
            raise RateLimitExceededError(key, retry_after_seconds=retry_after)

    def allow(self, key: str) -> bool:
        try:
            self.check(key)
        except RateLimitExceededError:
            return False
        return True

    def reset(self, key: str) -> None:
        self.backend.reset(self._scoped(key))
        logger.info("Rate limit reset", limiter=self.name, key=key)
