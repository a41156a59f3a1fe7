"""
Service wiring for CuraNet
Builds the engine components around one shared database engine
"""

from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Optional

import structlog

from .audit import AuditLog, AuditStorage, InMemoryAuditStorage
from .config import PolicyConfiguration, SecurityConfig, get_security_config
from .consent import (
    ConsentAuthority,
    ConsentManager,
    ConsentStorage,
    ConsentStore,
    InMemoryConsentStorage,
)
from .emergency import (
    EmergencyOverride,
    EmergencyProfileSource,
    EmergencyShareStorage,
    InMemoryEmergencyProfileSource,
    InMemoryEmergencyShareStorage,
)
from .policy import AccessGate, IdentityResolver, InMemoryIdentityResolver, RateLimiter
from .utils.clock import Clock, SystemClock
from .utils.db import build_engine

logger = structlog.get_logger(__name__)


@dataclass
class SecurityServices:
    """Everything the HTTP layer talks to"""

    config: SecurityConfig
    policy: PolicyConfiguration
    clock: Clock
    identity_resolver: IdentityResolver
    store: ConsentStore
    authority: ConsentAuthority
    audit_log: AuditLog
    gate: AccessGate
    consent_manager: ConsentManager
    emergency: EmergencyOverride


def build_services(config: Optional[SecurityConfig] = None,
                   policy: Optional[PolicyConfiguration] = None,
                   clock: Optional[Clock] = None,
                   identity_resolver: Optional[IdentityResolver] = None,
                   profile_source: Optional[EmergencyProfileSource] = None,
                   rate_limiter: Optional[RateLimiter] = None,
                   executor: Optional[Executor] = None,
                   in_memory: bool = False) -> SecurityServices:
    """
    Wire the engine.

    With ``in_memory`` every repository is process-local; otherwise all of
    them share one SQLAlchemy engine built from ``config.database_url``.
    """
    config = config or get_security_config()
    policy = policy or PolicyConfiguration.from_config(config)
    clock = clock or SystemClock()
    identity_resolver = identity_resolver or InMemoryIdentityResolver()
    profile_source = profile_source or InMemoryEmergencyProfileSource()

    if in_memory:
        consent_storage = InMemoryConsentStorage()
        audit_storage = InMemoryAuditStorage()
        share_storage = InMemoryEmergencyShareStorage()
    else:
        engine = build_engine(config.database_url)
        consent_storage = ConsentStorage(engine=engine)
        audit_storage = AuditStorage(engine=engine)
        share_storage = EmergencyShareStorage(engine=engine)

    store = ConsentStore(consent_storage, identity_resolver, clock, policy, config)
    authority = ConsentAuthority(store, policy, identity_resolver, executor)
    audit_log = AuditLog(audit_storage, clock, config)

    logger.info("Security services built",
                in_memory=in_memory,
                provider_override=policy.provider_override_enabled,
                auto_extend_requests=policy.auto_extend_expired_requests)

    return SecurityServices(
        config=config,
        policy=policy,
        clock=clock,
        identity_resolver=identity_resolver,
        store=store,
        authority=authority,
        audit_log=audit_log,
        gate=AccessGate(authority, audit_log, config),
        consent_manager=ConsentManager(store, audit_log),
        emergency=EmergencyOverride(
            audit_log,
            profile_source,
            storage=share_storage,
            rate_limiter=rate_limiter,
            clock=clock,
            config=config,
        ),
    )
