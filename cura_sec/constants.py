"""
Constants for CuraNet Security Module

Centralized configuration for consent policy, audit limits,
emergency sharing and error codes.
"""

from typing import Final, Tuple

# =============================================================================
# SERVICE IDENTIFICATION
# =============================================================================

SERVICE_NAME: Final[str] = "cura-sec"
SERVICE_VERSION: Final[str] = "0.1.0"

# =============================================================================
# AUTHORIZATION POLICY
# =============================================================================

# A consent that grants READ_BASIC satisfies any read-only scope requirement.
# Kept as a named switch so the weakening is visible and can be turned off.
READ_BASIC_SATISFIES_ANY_READ: Final[bool] = True

SELF_ACCESS_CONSENT_ID: Final[str] = "self"
ADMIN_OVERRIDE_CONSENT_ID: Final[str] = "admin-override"
PROVIDER_OVERRIDE_CONSENT_ID: Final[str] = "dev-provider-override"

PATIENT_ROLE: Final[str] = "patient"


# =============================================================================
# POLICY DEFAULTS
# =============================================================================

class PolicyDefaults:
    """Default policy configuration"""
    REQUEST_TTL_HOURS: Final[int] = 48
    REQUEST_EXTENSION_HOURS: Final[int] = 48

    EMERGENCY_MAX_TTL_SECONDS: Final[int] = 24 * 60 * 60
    TOKEN_PREFIX_LENGTH: Final[int] = 8

    AUDIT_EXPORT_MAX_ROWS: Final[int] = 10000
    CONSENT_DETAIL_AUDIT_ROWS: Final[int] = 20


# =============================================================================
# EMERGENCY SHARING
# =============================================================================

class EmergencyScopes:
    """Data categories an emergency share can expose"""
    BASIC: Final[str] = "basic"
    EMERGENCY: Final[str] = "emergency"  # umbrella for the critical set
    BLOOD_GROUP: Final[str] = "blood_group"
    ALLERGIES: Final[str] = "allergies"
    CHRONIC_CONDITIONS: Final[str] = "chronic_conditions"
    EMERGENCY_CONTACT: Final[str] = "emergency_contact"
    MEDICATIONS: Final[str] = "medications"
    MEDICAL_CONDITIONS: Final[str] = "medical_conditions"

    ALL: Final[Tuple[str, ...]] = (
        BASIC, EMERGENCY, BLOOD_GROUP, ALLERGIES, CHRONIC_CONDITIONS,
        EMERGENCY_CONTACT, MEDICATIONS, MEDICAL_CONDITIONS
    )

    DEFAULT: Final[Tuple[str, ...]] = (BASIC, EMERGENCY, ALLERGIES)


REVOKED_BY_PATIENT: Final[str] = "REVOKED_BY_PATIENT"


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCodes:
    """Standardized error codes for the security module"""
    UNKNOWN_ERROR: Final[str] = "UNKNOWN_ERROR"
    VALIDATION_ERROR: Final[str] = "VALIDATION_ERROR"

    NOT_FOUND: Final[str] = "NOT_FOUND"
    CONFLICT: Final[str] = "CONFLICT"
    INVALID_STATE: Final[str] = "INVALID_STATE"
    INVALID_SCOPE: Final[str] = "INVALID_SCOPE"

    ACCESS_DENIED: Final[str] = "ACCESS_DENIED"
    RATE_LIMITED: Final[str] = "RATE_LIMITED"

    AUDIT_WRITE_FAILED: Final[str] = "AUDIT_WRITE_FAILED"
