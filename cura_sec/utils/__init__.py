"""
Utility functions for CuraNet security module
ID generation, validation, and clock sources
"""

from .ids import (
    generate_consent_id,
    generate_request_id,
    generate_audit_id,
    generate_share_id,
    generate_emergency_token,
)
from .validators import (
    validate_actor_id,
    validate_scopes,
    validate_emergency_scopes,
    validate_ttl_seconds,
    sanitize_audit_message,
)
from .clock import Clock, SystemClock, FrozenClock, ensure_utc, to_naive_utc
from .db import build_engine

__all__ = [
    # ID generation
    "generate_consent_id",
    "generate_request_id",
    "generate_audit_id",
    "generate_share_id",
    "generate_emergency_token",
    # Validators
    "validate_actor_id",
    "validate_scopes",
    "validate_emergency_scopes",
    "validate_ttl_seconds",
    "sanitize_audit_message",
    # Clocks
    "Clock",
    "SystemClock",
    "FrozenClock",
    "ensure_utc",
    "to_naive_utc",
    # Storage
    "build_engine",
]
