"""
ID generation and validation utilities for CuraNet
Opaque identifiers for consents, requests, audit entries and shares
"""

import uuid
import secrets


def generate_consent_id() -> str:
    """Generate consent record ID"""
    return f"consent_{uuid.uuid4()}"


def generate_request_id() -> str:
    """Generate consent request ID"""
    return f"creq_{uuid.uuid4()}"


def generate_audit_id() -> str:
    """Generate audit entry ID"""
    return f"audit_{uuid.uuid4()}"


def generate_share_id() -> str:
    """Generate emergency share ID"""
    return str(uuid.uuid4())


def generate_emergency_token(num_bytes: int = 32) -> str:
    """Generate a raw bearer token for an emergency share"""
    return secrets.token_hex(num_bytes)


def generate_authorization_token_id() -> str:
    """Generate ID for a token handed out by the access gate"""
    return f"authz_{secrets.token_urlsafe(16)}"

