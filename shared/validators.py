"""
Destination validators. Pure functions, framework-agnostic.
"""

from __future__ import annotations

import re

import validators as _validators

# E.164: leading +, country code 1-9, up to 15 digits total
_E164_PATTERN = re.compile(r"^\+[1-9]\d{9,14}$")


def validate_phone(phone: str) -> bool:
    """Return True if *phone* is an E.164 number with country code.

    The original mobile clients always sent ``+<country><number>``; bare
    local numbers are rejected rather than guessed at.
    """
    return bool(phone) and _E164_PATTERN.match(phone) is not None


def validate_email(email: str) -> bool:
    return bool(email) and _validators.email(email) is True


def validate_destination(channel: str, destination: str) -> bool:
    """Check that *destination* has the format expected by *channel*."""
    if channel == "sms":
        return validate_phone(destination)
    if channel == "email":
        return validate_email(destination)
    return False


def infer_channel(destination: str) -> str:
    """Best-effort channel guess for a bare destination string."""
    return "email" if "@" in destination else "sms"
