"""
Security-Focused Validators for CuraNet Security Module

Provides validation utilities for actor IDs, consent scopes,
emergency share parameters and audit text.
"""

import re
from typing import Optional, Any, FrozenSet, Iterable, List

import structlog

from ..constants import EmergencyScopes
from ..exceptions import ValidationError, InvalidScopeError

logger = structlog.get_logger(__name__)

# =============================================================================
# REGEX PATTERNS
# =============================================================================

ACTOR_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.:@-]{1,128}$")

# =============================================================================
# VALIDATION FUNCTIONS
# =============================================================================

def validate_actor_id(
    actor_id: Any,
    field_name: str = "actor_id",
    required: bool = True
) -> Optional[str]:
    """
    Validate a patient/provider/actor identifier.

    Args:
        actor_id: Identifier to validate
        field_name: Field name for error messages
        required: Whether the field is required

    Returns:
        Validated identifier or None

    Raises:
        ValidationError: If validation fails
    """
    if actor_id is None or (isinstance(actor_id, str) and not actor_id.strip()):
        if required:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return None

    if not isinstance(actor_id, str):
        raise ValidationError(f"{field_name} must be a string", field=field_name)

    actor_id = actor_id.strip()

    if not ACTOR_ID_PATTERN.match(actor_id):
        raise ValidationError(
            f"{field_name} contains invalid characters",
            field=field_name
        )

    return actor_id


def validate_scopes(
    scopes: Any,
    field_name: str = "scope",
    required: bool = True
) -> FrozenSet["ConsentScope"]:
    """
    Validate a collection of consent scopes.

    Accepts enum members or their string values, case-insensitively.

    Raises:
        ValidationError: If the collection is missing or empty
        InvalidScopeError: If any scope is not recognized
    """
    from ..consent.models import ConsentScope

    if scopes is None or (not isinstance(scopes, str) and not scopes):
        if required:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return frozenset()

    if isinstance(scopes, (str, ConsentScope)):
        scopes = [scopes]

    valid = [s.value for s in ConsentScope]
    validated = set()
    for raw in scopes:
        if isinstance(raw, ConsentScope):
            validated.add(raw)
            continue
        candidate = str(raw).strip().upper()
        if candidate not in valid:
            raise InvalidScopeError(str(raw), valid)
        validated.add(ConsentScope(candidate))

    return frozenset(validated)


def validate_emergency_scopes(scopes: Optional[Iterable[str]]) -> List[str]:
    """Validate emergency share scopes, defaulting to the critical set"""
    if scopes is None:
        return list(EmergencyScopes.DEFAULT)

    validated: List[str] = []
    for raw in scopes:
        scope = str(raw).strip().lower()
        if scope not in EmergencyScopes.ALL:
            raise InvalidScopeError(scope, EmergencyScopes.ALL)
        if scope not in validated:
            validated.append(scope)

    if not validated:
        raise ValidationError("scope must not be empty", field="scope")

    return validated


def validate_ttl_seconds(
    ttl_seconds: Any,
    max_seconds: int,
    field_name: str = "ttl_seconds"
) -> int:
    """
    Validate an emergency share lifetime.

    Raises:
        ValidationError: If the value is not a positive integer within the cap
    """
    try:
        ttl = int(ttl_seconds)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)

    if ttl <= 0:
        raise ValidationError(f"{field_name} must be positive", field=field_name)

    if ttl > max_seconds:
        raise ValidationError(
            f"{field_name} cannot exceed {max_seconds}",
            field=field_name,
            details={"max_seconds": max_seconds}
        )

    return ttl


def sanitize_audit_message(message: Optional[str], max_length: int = 1000) -> Optional[str]:
    """
    Sanitize free text (reasons, purposes) before it is stored in the audit trail.

    Args:
        message: Message to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized message, or None when nothing was given
    """
    if message is None:
        return None

    if len(message) > max_length:
        message = message[:max_length] + "...[truncated]"

    # Remove potential log injection characters
    message = message.replace("\n", " ").replace("\r", " ")

    message = ''.join(c for c in message if c.isprintable() or c == ' ')

    return message
