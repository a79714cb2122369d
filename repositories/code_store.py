"""
One-time code storage.

CodeStore holds the lifecycle rules shared by every backend:

- issue() validates the destination, generates the code, and under the
  per-(subject, purpose) lock retires any active code before persisting the
  new one, so a pair never has two active codes.
- latest() enforces expiry at read time: an expired record reads as None,
  regardless of whether the TTL reaper has removed it yet.
- record_attempt() only moves forward and refuses once the cap is reached.

Backends implement the storage primitives. InMemoryCodeStore is the
process-local backend used for single-instance deployments and tests;
MongoCodeStore lives in repositories/mongo_code_store.py.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Optional, Union

from bson import ObjectId

from errors import InvalidDestinationError, MaxAttemptsExceeded, NotFoundError
from schemas.models.otp import Channel, DeliveryStatus, OneTimeCodeDoc, Purpose
from shared.crypto import hash_token
from shared.datetime_utils import utcnow
from shared.generators import generate_otp_code
from shared.keyed_lock import KeyedLock
from shared.logging import get_logger
from shared.masking import mask_destination
from shared.validators import validate_destination

log = get_logger(__name__)


class CodeStore(ABC):
    def __init__(
        self,
        *,
        code_length: int = 6,
        expiry_seconds: int = 600,
        max_attempts: int = 5,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
        code_factory: Callable[[int], str] = generate_otp_code,
    ) -> None:
        self.code_length = code_length
        self.expiry = timedelta(seconds=expiry_seconds)
        self.max_attempts = max_attempts
        self.retention = timedelta(days=retention_days)
        self._clock = clock
        self._code_factory = code_factory
        self._locks = KeyedLock()

    def now(self) -> datetime:
        return self._clock()

    @asynccontextmanager
    async def locked(self, subject_id: str, purpose: Purpose) -> AsyncIterator[None]:
        """Serialise work on one (subject, purpose) pair. Not re-entrant."""
        async with self._locks.hold((subject_id, Purpose(purpose))):
            yield

    async def issue(
        self,
        subject_id: str,
        purpose: Purpose,
        channel: Channel,
        destination: str,
    ) -> OneTimeCodeDoc:
        purpose, channel = Purpose(purpose), Channel(channel)
        if not validate_destination(channel.value, destination):
            raise InvalidDestinationError(
                f"Destination is not a valid {channel.value} address",
                field="destination",
            )

        code = self._code_factory(self.code_length)
        async with self.locked(subject_id, purpose):
            now = self.now()
            retired = await self._invalidate_active(subject_id, purpose, now)
            record = OneTimeCodeDoc(
                subject_id=subject_id,
                purpose=purpose,
                channel=channel,
                destination=destination,
                code_hash=hash_token(code),
                created_at=now,
                expires_at=now + self.expiry,
            )
            record = await self._insert(record)

        log.info(
            "otp_issued",
            subject_id=subject_id,
            purpose=purpose.value,
            channel=channel.value,
            destination=mask_destination(destination),
            superseded=retired,
        )
        return record.model_copy(update={"code": code})

    async def latest(self, subject_id: str, purpose: Purpose) -> Optional[OneTimeCodeDoc]:
        """Most recent code for the pair, or None when absent or expired."""
        record = await self._find_latest(subject_id, Purpose(purpose))
        if record is None or record.is_expired(self.now()):
            return None
        return record

    async def invalidate(self, subject_id: str, purpose: Purpose) -> int:
        """Retire every active code for the pair without verifying it."""
        purpose = Purpose(purpose)
        async with self.locked(subject_id, purpose):
            count = await self._invalidate_active(subject_id, purpose, self.now())
        if count:
            log.info("otp_invalidated", subject_id=subject_id, purpose=purpose.value, count=count)
        return count

    async def retire(self, code_id: Union[str, ObjectId]) -> bool:
        """Retire one specific code. A newer code for the same pair is left alone."""
        retired = await self.consume(code_id)
        if retired:
            log.info("otp_retired", code_id=str(code_id))
        return retired

    @abstractmethod
    async def record_attempt(self, code_id: Union[str, ObjectId]) -> int:
        """Count one attempt; raise MaxAttemptsExceeded once the cap is reached."""

    @abstractmethod
    async def consume(self, code_id: Union[str, ObjectId]) -> bool:
        """Mark the code used. False if it was already used."""

    @abstractmethod
    async def record_delivery(
        self,
        code_id: Union[str, ObjectId],
        status: DeliveryStatus,
        provider: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None: ...

    @abstractmethod
    async def reap(self, now: Optional[datetime] = None) -> int:
        """Delete expired codes and used codes past retention. Best-effort."""

    @abstractmethod
    async def _find_latest(self, subject_id: str, purpose: Purpose) -> Optional[OneTimeCodeDoc]: ...

    @abstractmethod
    async def _invalidate_active(self, subject_id: str, purpose: Purpose, now: datetime) -> int: ...

    @abstractmethod
    async def _insert(self, record: OneTimeCodeDoc) -> OneTimeCodeDoc: ...


class InMemoryCodeStore(CodeStore):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._records: dict[str, OneTimeCodeDoc] = {}

    def __len__(self) -> int:
        return len(self._records)

    def _get(self, code_id: Union[str, ObjectId]) -> OneTimeCodeDoc:
        record = self._records.get(str(code_id))
        if record is None:
            raise NotFoundError("Code not found")
        return record

    async def _find_latest(self, subject_id: str, purpose: Purpose) -> Optional[OneTimeCodeDoc]:
        matches = [
            r
            for r in self._records.values()
            if r.subject_id == subject_id and r.purpose is purpose
        ]
        if not matches:
            return None
        newest = max(matches, key=lambda r: (r.created_at, str(r.id)))
        return newest.model_copy()

    async def _invalidate_active(self, subject_id: str, purpose: Purpose, now: datetime) -> int:
        count = 0
        for record in self._records.values():
            if record.subject_id == subject_id and record.purpose is purpose and not record.is_used:
                record.is_used = True
                record.used_at = now
                count += 1
        return count

    async def _insert(self, record: OneTimeCodeDoc) -> OneTimeCodeDoc:
        record.id = ObjectId()
        self._records[str(record.id)] = record
        return record.model_copy()

    async def record_attempt(self, code_id: Union[str, ObjectId]) -> int:
        record = self._get(code_id)
        if record.attempts >= self.max_attempts:
            raise MaxAttemptsExceeded("Maximum verification attempts reached")
        record.attempts += 1
        return record.attempts

    async def consume(self, code_id: Union[str, ObjectId]) -> bool:
        record = self._get(code_id)
        if record.is_used:
            return False
        record.is_used = True
        record.used_at = self.now()
        return True

    async def record_delivery(
        self,
        code_id: Union[str, ObjectId],
        status: DeliveryStatus,
        provider: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None:
        record = self._get(code_id)
        record.delivery_status = DeliveryStatus(status)
        record.provider = provider
        record.message_id = message_id

    async def reap(self, now: Optional[datetime] = None) -> int:
        now = now or self.now()
        cutoff = now - self.retention
        doomed = [
            key
            for key, r in self._records.items()
            if r.is_expired(now) or (r.is_used and r.used_at is not None and r.used_at < cutoff)
        ]
        for key in doomed:
            del self._records[key]
        return len(doomed)
