"""Tests for the fixed-window rate limiter and its backends."""

from __future__ import annotations

from datetime import datetime, UTC
from typing import Dict, List, Tuple

import pytest

from cura_sec.exceptions import RateLimitExceededError
from cura_sec.policy.ratelimit import InMemoryRateLimitBackend, RateLimiter, RedisRateLimitBackend
from cura_sec.utils.clock import FrozenClock


START = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class FakeRedisPipeline:
    def __init__(self, client: "FakeRedis"):
        self.client = client
        self.commands: List[Tuple] = []

    def incr(self, key: str):
        self.commands.append(("incr", key))
        return self

    def expire(self, key: str, seconds: int, nx: bool = False):
        self.commands.append(("expire", key, seconds, nx))
        return self

    def ttl(self, key: str):
        self.commands.append(("ttl", key))
        return self

    def execute(self):
        results = []
        for command in self.commands:
            results.append(getattr(self.client, command[0])(*command[1:]))
        self.commands = []
        return results


class FakeRedis:
    """Just enough of redis.Redis for the rate limit backend"""

    def __init__(self):
        self.values: Dict[str, int] = {}
        self.ttls: Dict[str, int] = {}

    def pipeline(self):
        return FakeRedisPipeline(self)

    def incr(self, key: str) -> int:
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    def expire(self, key: str, seconds: int, nx: bool = False) -> bool:
        if nx and key in self.ttls:
            return False
        self.ttls[key] = seconds
        return True

    def ttl(self, key: str) -> int:
        return self.ttls.get(key, -1)

    def delete(self, key: str) -> int:
        self.ttls.pop(key, None)
        return 1 if self.values.pop(key, None) is not None else 0


class TestRateLimiter:
    """Fixed-window counting with the in-memory backend."""

    def setup_method(self) -> None:
        self.clock = FrozenClock(START)
        self.limiter = RateLimiter(limit=3, window_seconds=30, clock=self.clock, name="test")

    def test_allows_up_to_limit(self) -> None:
        assert all(self.limiter.allow("client_a") for _ in range(3))
        assert not self.limiter.allow("client_a")

    def test_keys_are_independent(self) -> None:
        for _ in range(3):
            self.limiter.check("client_a")
        self.limiter.check("client_b")

    def test_retry_after_counts_down(self) -> None:
        for _ in range(3):
            self.limiter.check("client_a")
        self.clock.advance(seconds=10)

        with pytest.raises(RateLimitExceededError) as exc_info:
            self.limiter.check("client_a")

        assert exc_info.value.details["retry_after_seconds"] == 20
        assert exc_info.value.key == "client_a"

    def test_window_expiry_and_reset(self) -> None:
        for _ in range(4):
            self.limiter.allow("client_a")

        self.clock.advance(seconds=30)
        assert self.limiter.allow("client_a")

        for _ in range(3):
            self.limiter.allow("client_a")
        self.limiter.reset("client_a")
        assert self.limiter.allow("client_a")

    def test_rejects_nonsense_configuration(self) -> None:
        with pytest.raises(ValueError):
            RateLimiter(limit=0, window_seconds=30)

    def test_backend_clear(self) -> None:
        backend = InMemoryRateLimitBackend()
        limiter = RateLimiter(limit=1, window_seconds=30, backend=backend, clock=self.clock)
        limiter.check("client_a")
        backend.clear()
        limiter.check("client_a")

    def test_expired_windows_are_evicted(self) -> None:
        backend = InMemoryRateLimitBackend()
        limiter = RateLimiter(limit=5, window_seconds=30, backend=backend, clock=self.clock)
        for i in range(50):
            limiter.check(f"10.0.0.{i}")
        assert backend.size == 50

        self.clock.advance(seconds=31)
        limiter.check("10.0.1.1")

        assert backend.size == 1


class TestRedisRateLimitBackend:
    """The redis backend only sets the expiry on the first hit of a window."""

    def setup_method(self) -> None:
        self.redis = FakeRedis()
        self.backend = RedisRateLimitBackend(client=self.redis, key_prefix="test")
        self.clock = FrozenClock(START)

    def test_counts_and_prefixes_keys(self) -> None:
        limiter = RateLimiter(limit=2, window_seconds=45, backend=self.backend, clock=self.clock,
                              name="emergency-redeem")

        limiter.check("10.0.0.1")
        limiter.check("10.0.0.1")
        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.check("10.0.0.1")

        assert self.redis.values == {"test:emergency-redeem:10.0.0.1": 3}
        assert self.redis.ttls == {"test:emergency-redeem:10.0.0.1": 45}
        assert exc_info.value.details["retry_after_seconds"] == 45

    def test_reset_deletes_key(self) -> None:
        self.backend.hit("client_a", 30, START)
        self.backend.reset("client_a")
        assert self.redis.values == {}
