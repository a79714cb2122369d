"""
Date/time helpers. Framework-agnostic.

Every timestamp in the OTP subsystem is a timezone-aware UTC datetime.
Components take a ``clock`` callable defaulting to :func:`utcnow` so tests
can move time without patching.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def seconds_until(moment: datetime, now: datetime) -> int:
    """Whole seconds from *now* until *moment*, rounded up, never negative."""
    return max(0, math.ceil((moment - now).total_seconds()))
