"""
Token hashing helpers.

OTP codes and reset grants are stored as SHA-256 digests; the plaintext
only ever lives in the delivery message and the caller's response.
"""

from __future__ import annotations

import hashlib
import hmac


def hash_token(token: str) -> str:
    """Return the hex-encoded SHA-256 digest of *token*.

    Returns:
        64-character lowercase hex string.
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_matches(submitted: str, stored_hash: str) -> bool:
    """Constant-time check of *submitted* against a stored SHA-256 digest."""
    return hmac.compare_digest(hash_token(submitted), stored_hash)
