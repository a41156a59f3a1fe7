"""
Policy enforcement module for CuraNet
Access gate, identity resolution and rate limiting
"""

from .identity import Identity, IdentityResolver, InMemoryIdentityResolver
from .ratelimit import RateLimiter, RateLimitBackend, InMemoryRateLimitBackend, RedisRateLimitBackend
from .gate import AccessGate, AuthorizationToken, RECORD_ACTION_MAP

__all__ = [
    "Identity",
    "IdentityResolver",
    "InMemoryIdentityResolver",
    "RateLimiter",
    "RateLimitBackend",
    "InMemoryRateLimitBackend",
    "RedisRateLimitBackend",
    "AccessGate",
    "AuthorizationToken",
    "RECORD_ACTION_MAP",
]
