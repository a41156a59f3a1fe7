"""
Hashing utilities for CuraNet
Bearer-token hashing, secure hashing, and tamper-evident chaining
"""

import hashlib
import json
from typing import Any, Dict, Optional
import bcrypt
import structlog

from ..constants import PolicyDefaults

logger = structlog.get_logger(__name__)

GENESIS_HASH_INPUT = b"cura-audit-genesis"


class HashError(Exception):
    """Base exception for hashing-related errors"""
    pass


def hash_token(token: str, rounds: int = 12) -> str:
    """
    Hash a bearer token using bcrypt

    Args:
        token: Raw token, never persisted
        rounds: bcrypt cost factor (default 12)

    Returns:
        bcrypt hash string
    """
    try:
        salt = bcrypt.gensalt(rounds=rounds)
        return bcrypt.hashpw(token.encode('utf-8'), salt).decode('utf-8')

    except Exception as e:
        logger.error("Token hashing failed", error=str(e))
        raise HashError(f"Token hashing failed: {str(e)}")


def verify_token(token: str, token_hash: str) -> bool:
    """
    Compare a raw token against a stored bcrypt hash.

    bcrypt.checkpw compares digests in constant time.
    """
    try:
        return bcrypt.checkpw(token.encode('utf-8'), token_hash.encode('utf-8'))

    except ValueError as e:
        logger.error("Token verification failed", error=str(e))
        return False


def token_prefix(token: Optional[str], length: int = PolicyDefaults.TOKEN_PREFIX_LENGTH) -> str:
    """Loggable token fragment"""
    if not token:
        return ""
    return token[:length] + "..."


def secure_hash(data: bytes) -> str:
    """Hex-encoded SHA-256 of data"""
    return hashlib.sha256(data).hexdigest()


def canonical_json(data: Dict[str, Any]) -> str:
    """Deterministic JSON used as hash input"""
    return json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)


def chain_hash(previous_hash: str, payload: str) -> str:
    """Hash of one chain link"""
    return secure_hash(f"{previous_hash}:{payload}".encode('utf-8'))


def genesis_hash() -> str:
    return secure_hash(GENESIS_HASH_INPUT)
