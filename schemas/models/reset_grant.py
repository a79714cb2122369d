"""
Password-reset grant document model.

Maps to the `reset_grants` collection. Issued after a successful
passwordReset verification and consumed by the follow-up password change.
token_hash stores SHA-256(token); used_at is None until consumed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import field_validator

from schemas.models.base import MongoBaseModel, as_utc


class ResetGrantDoc(MongoBaseModel):
    subject_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None

    @field_validator("created_at", "expires_at", "used_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None
