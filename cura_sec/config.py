"""
Security configuration management for CuraNet
Runtime settings for consent, audit and emergency access, plus the
authorization policy value object handed to the decision engine
"""

from typing import FrozenSet
from pydantic_settings import BaseSettings
from pydantic import BaseModel, ConfigDict, Field

from .constants import READ_BASIC_SATISFIES_ANY_READ, PolicyDefaults


class SecurityConfig(BaseSettings):
    """Security and audit configuration settings"""

    # Storage
    database_url: str = Field(default="sqlite:///cura_sec.db")

    # Consent lifecycle
    consent_request_ttl_hours: int = Field(default=PolicyDefaults.REQUEST_TTL_HOURS)
    request_extension_hours: int = Field(default=PolicyDefaults.REQUEST_EXTENSION_HOURS)
    admin_role: str = Field(default="admin")

    # Emergency (break-glass) sharing
    emergency_max_ttl_seconds: int = Field(default=PolicyDefaults.EMERGENCY_MAX_TTL_SECONDS)
    emergency_default_ttl_seconds: int = Field(default=3600)
    emergency_token_bytes: int = Field(default=32)
    emergency_token_rounds: int = Field(default=12, description="bcrypt cost factor")
    emergency_redeem_limit: int = Field(default=10)
    emergency_redeem_window_seconds: int = Field(default=60)

    # Audit
    audit_page_size_default: int = Field(default=50)
    audit_page_size_max: int = Field(default=500)
    audit_export_max_rows: int = Field(default=PolicyDefaults.AUDIT_EXPORT_MAX_ROWS)
    audit_write_attempts: int = Field(default=3)
    audit_retry_min_wait: float = Field(default=0.1)
    audit_retry_max_wait: float = Field(default=2.0)
    audit_fail_open_reads: bool = Field(default=True)
    audit_fail_open_writes: bool = Field(default=False)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = {"env_prefix": "CURA_SEC_", "case_sensitive": False}


class PolicyConfiguration(BaseModel):
    """
    Authorization policy knobs, fixed at construction time.

    Every bypass the decision engine knows about lives here so it can be
    audited and flipped in one place. The defaults are the production
    behaviour; ``development()`` is the only way to get the permissive one.
    """

    model_config = ConfigDict(frozen=True)

    read_basic_satisfies_any_read: bool = READ_BASIC_SATISFIES_ANY_READ
    admin_role: str = "admin"
    auto_extend_expired_requests: bool = False
    request_extension_hours: int = PolicyDefaults.REQUEST_EXTENSION_HOURS
    provider_override_roles: FrozenSet[str] = Field(default_factory=frozenset)
    provider_override_scopes: FrozenSet[str] = Field(default_factory=frozenset)

    @property
    def provider_override_enabled(self) -> bool:
        return bool(self.provider_override_roles and self.provider_override_scopes)

    @classmethod
    def from_config(cls, config: SecurityConfig) -> "PolicyConfiguration":
        return cls(
            admin_role=config.admin_role,
            request_extension_hours=config.request_extension_hours,
        )

    @classmethod
    def development(cls, **overrides) -> "PolicyConfiguration":
        """Permissive policy used by local development setups"""
        values = {
            "auto_extend_expired_requests": True,
            "provider_override_roles": frozenset({"doctor"}),
            "provider_override_scopes": frozenset({"WRITE_NOTES", "READ_MEDICAL"}),
        }
        values.update(overrides)
        return cls(**values)


# Global configuration instance
security_config = SecurityConfig()


def get_security_config() -> SecurityConfig:
    """Get the global security configuration instance"""
    return security_config

