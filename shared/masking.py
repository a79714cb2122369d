"""
Masking helpers for anything that may end up in a log line.

- mask_email("john@example.com")      -> "j***@example.com"
- mask_phone("+15550001234")          -> "***1234"
- redact_uri("mongodb+srv://u:p@h/db") -> "mongodb+srv://***:***@h/db"
"""

from __future__ import annotations

from typing import Optional

_VISIBLE_PHONE_DIGITS = 4


def mask_email(email: str) -> str:
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    if not local:
        return f"***@{domain}"
    return f"{local[0]}***@{domain}"


def mask_phone(phone: str) -> str:
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) <= _VISIBLE_PHONE_DIGITS:
        return "***"
    return f"***{digits[-_VISIBLE_PHONE_DIGITS:]}"


def mask_destination(destination: Optional[str]) -> str:
    """Mask a phone number or email address for logging."""
    if not destination:
        return "***"
    if "@" in destination:
        return mask_email(destination)
    return mask_phone(destination)


def redact_uri(uri: str) -> str:
    """Strip credentials out of a connection URI before it is logged."""
    scheme, sep, rest = uri.partition("://")
    if not sep:
        return "***"
    if "@" not in rest:
        return uri
    host_part = rest.rsplit("@", 1)[1]
    return f"{scheme}://***:***@{host_part}"
