"""
Cryptographic utilities for CuraNet
Token hashing and tamper-evident hash chaining
"""

from .hash import (
    HashError,
    hash_token,
    verify_token,
    token_prefix,
    secure_hash,
    canonical_json,
    chain_hash,
    genesis_hash,
)

__all__ = [
    "HashError",
    "hash_token",
    "verify_token",
    "token_prefix",
    "secure_hash",
    "canonical_json",
    "chain_hash",
    "genesis_hash",
]
