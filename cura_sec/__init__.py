"""
CuraNet Security Module
Consent lifecycle, access enforcement, audit trail and emergency access for CuraNet
"""

__version__ = "0.1.0"
__author__ = "CuraNet"

# Core exports
from .config import SecurityConfig, PolicyConfiguration, get_security_config

# Consent management
from .consent import (
    Consent, ConsentRequest, ConsentScope, ConsentStatus, RequestStatus, AccessAction,
    ConsentStore, ConsentAuthority, Decision, ConsentManager
)

# Audit trail
from .audit import AuditAction, AuditEntry, AuditFilters, AuditLog

# Policy enforcement
from .policy import (
    AccessGate, AuthorizationToken, Identity, InMemoryIdentityResolver, RateLimiter
)

# Emergency access
from .emergency import EmergencyOverride, EmergencyProfile, InMemoryEmergencyProfileSource

# Errors
from .exceptions import (
    SecurityError, NotFoundError, ConflictError, StateError, ValidationError,
    AuthorizationError, RateLimitExceededError, AuditWriteError, DenialReason
)

# Wiring and utilities
from .services import SecurityServices, build_services
from .utils import FrozenClock, SystemClock

__all__ = [
    # Config
    "SecurityConfig",
    "PolicyConfiguration",
    "get_security_config",

    # Consent
    "Consent",
    "ConsentRequest",
    "ConsentScope",
    "ConsentStatus",
    "RequestStatus",
    "AccessAction",
    "ConsentStore",
    "ConsentAuthority",
    "Decision",
    "ConsentManager",

    # Audit
    "AuditAction",
    "AuditEntry",
    "AuditFilters",
    "AuditLog",

    # Policy
    "AccessGate",
    "AuthorizationToken",
    "Identity",
    "InMemoryIdentityResolver",
    "RateLimiter",

    # Emergency
    "EmergencyOverride",
    "EmergencyProfile",
    "InMemoryEmergencyProfileSource",

    # Errors
    "SecurityError",
    "NotFoundError",
    "ConflictError",
    "StateError",
    "ValidationError",
    "AuthorizationError",
    "RateLimitExceededError",
    "AuditWriteError",
    "DenialReason",

    # Wiring
    "SecurityServices",
    "build_services",
    "FrozenClock",
    "SystemClock",
]
