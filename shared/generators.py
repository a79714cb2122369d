"""
Random code and token generators. Pure functions without side effects.

Everything here draws from the ``secrets`` module; these values guard
account access.
"""

from __future__ import annotations

import secrets
import string

def generate_otp_code(length: int = 6) -> str:
    """Generate a cryptographically secure numeric OTP.

    Args:
        length: Number of digits (default 6).

    Returns:
        String of random decimal digits, leading zeros preserved.
    """
    return "".join(secrets.choice(string.digits) for _ in range(length))


def generate_secure_token(length: int = 32) -> str:
    """Generate a cryptographically secure URL-safe random token.

    Args:
        length: Number of random bytes before base64 encoding (default 32).
            The resulting string will be longer than *length* characters.
    """
    return secrets.token_urlsafe(length)
