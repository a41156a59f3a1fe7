"""
Custom Exceptions for CuraNet Security Module

Provides a unified exception hierarchy for the consent store,
authorization decisions, emergency access and audit logging.
"""

from enum import Enum
from typing import Optional, Dict, Any, Iterable

from .constants import ErrorCodes


class DenialReason(str, Enum):
    """Machine-readable reasons attached to a denied decision"""
    NO_ACTIVE_CONSENT = "no_active_consent"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    RATE_LIMITED = "rate_limited"


class SecurityError(Exception):
    """
    Base exception for all security module errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        error_code: str = ErrorCodes.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        result: Dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# STORE ERRORS
# =============================================================================

class NotFoundError(SecurityError):
    """
    Raised when a consent, request or share does not exist or is not owned
    by the caller. Both cases share one error so existence never leaks.
    """

    def __init__(self, resource_type: str, resource_id: Optional[str] = None):
        details: Dict[str, Any] = {"resource_type": resource_type}
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(
            message=f"{resource_type} not found",
            error_code=ErrorCodes.NOT_FOUND,
            details=details
        )


class ConflictError(SecurityError):
    """Raised when a write would violate a uniqueness invariant"""

    def __init__(
        self,
        message: str,
        existing_id: Optional[str] = None
    ):
        details: Dict[str, Any] = {}
        if existing_id:
            details["existing_id"] = existing_id
        super().__init__(message, ErrorCodes.CONFLICT, details)


class StateError(SecurityError):
    """Raised when a lifecycle transition is attempted from an invalid state"""

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None
    ):
        details: Dict[str, Any] = {}
        if current_state:
            details["current_state"] = current_state
        super().__init__(message, ErrorCodes.INVALID_STATE, details)


# =============================================================================
# AUTHORIZATION ERRORS
# =============================================================================

class AuthorizationError(SecurityError):
    """
    Raised by the access gate when a decision denies access.

    Carries only the reason code, the scopes that were required and, for
    ``insufficient_scope``, the consent that was found.
    """

    def __init__(
        self,
        reason: DenialReason,
        required_scopes: Optional[Iterable[str]] = None,
        consent_id: Optional[str] = None
    ):
        self.reason = DenialReason(reason)
        self.required_scopes = sorted(str(s) for s in (required_scopes or []))
        self.consent_id = consent_id
        details: Dict[str, Any] = {
            "reason": self.reason.value,
            "required_scopes": self.required_scopes,
        }
        if consent_id:
            details["consent_id"] = consent_id
        super().__init__(
            message="Access denied",
            error_code=ErrorCodes.ACCESS_DENIED,
            details=details
        )


class RateLimitExceededError(SecurityError):
    """Raised when a caller exceeds the configured request budget"""

    def __init__(self, key: str, retry_after_seconds: Optional[int] = None):
        details: Dict[str, Any] = {}
        if retry_after_seconds is not None:
            details["retry_after_seconds"] = retry_after_seconds
        self.key = key
        super().__init__("Too many requests", ErrorCodes.RATE_LIMITED, details)


# =============================================================================
# AUDIT ERRORS
# =============================================================================

class AuditWriteError(SecurityError):
    """Raised when the audit log could not durably record an entry"""

    def __init__(
        self,
        message: str = "Failed to write audit entry",
        action: Optional[str] = None,
        reason: Optional[str] = None
    ):
        details: Dict[str, Any] = {}
        if action:
            details["action"] = action
        if reason:
            details["reason"] = reason
        super().__init__(message, ErrorCodes.AUDIT_WRITE_FAILED, details)


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ValidationError(SecurityError):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, ErrorCodes.VALIDATION_ERROR, details)


class InvalidScopeError(ValidationError):
    """Raised when an unknown scope is supplied"""

    def __init__(
        self,
        scope: str,
        valid_scopes: Optional[Iterable[str]] = None
    ):
        details: Dict[str, Any] = {"invalid_scope": scope}
        if valid_scopes:
            details["valid_scopes"] = list(valid_scopes)
        super().__init__(
            message=f"Invalid scope: {scope}",
            field="scope",
            details=details
        )
        self.error_code = ErrorCodes.INVALID_SCOPE
