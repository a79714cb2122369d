"""
One-time code document model.

Maps to the `otps` collection of each tenant database.

code_hash stores SHA-256(code); the plain code is never persisted. The
``code`` field is populated only on the object returned from
CodeStore.issue() so the delivery pipeline can send it; it is excluded
from to_mongo().

attempts counts verification tries against this code and only grows; a
new code starts over at zero.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field, field_validator

from schemas.models.base import MongoBaseModel, as_utc


class Purpose(str, Enum):
    VERIFICATION = "verification"
    PASSWORD_RESET = "passwordReset"
    LOGIN = "login"


class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class OneTimeCodeDoc(MongoBaseModel):
    """Document model for the `otps` collection."""

    subject_id: str
    purpose: Purpose
    channel: Channel
    destination: str
    code_hash: str
    created_at: datetime
    expires_at: datetime
    attempts: int = Field(default=0, ge=0)
    is_used: bool = False
    used_at: Optional[datetime] = None
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    provider: Optional[str] = None
    message_id: Optional[str] = None

    code: Optional[str] = Field(default=None, exclude=True, repr=False)

    @field_validator("created_at", "expires_at", "used_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_mongo(self) -> dict:
        data = super().to_mongo()
        data["purpose"] = self.purpose.value
        data["channel"] = self.channel.value
        data["delivery_status"] = self.delivery_status.value
        return data
