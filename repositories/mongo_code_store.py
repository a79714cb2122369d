"""
MongoDB-backed CodeStore for one tenant.

The tenant handle is requested from the ConnectionManager on every call and
never stored, so a reconnect between two calls is picked up transparently.

The attempt counter is bumped with a conditional ``$inc`` (``attempts < cap``)
so concurrent verifiers on different instances cannot overshoot the cap.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import MaxAttemptsExceeded, NotFoundError
from infrastructure.database.connection_manager import ConnectionManager
from infrastructure.database.handles import TenantKey
from repositories.code_store import CodeStore
from schemas.models.otp import DeliveryStatus, OneTimeCodeDoc, Purpose
from shared.logging import get_logger

log = get_logger(__name__)

OTP_COLLECTION = "otps"


def _oid(code_id: Union[str, ObjectId]) -> ObjectId:
    if isinstance(code_id, ObjectId):
        return code_id
    try:
        return ObjectId(code_id)
    except (InvalidId, TypeError) as e:
        raise NotFoundError("Code not found") from e


class MongoCodeStore(CodeStore):
    def __init__(
        self,
        connections: ConnectionManager,
        tenant: TenantKey,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._connections = connections
        self.tenant = tenant

    async def _collection(self) -> Any:
        handle = await self._connections.get_handle(self.tenant)
        return handle.collection(OTP_COLLECTION)

    async def _find_latest(self, subject_id: str, purpose: Purpose) -> Optional[OneTimeCodeDoc]:
        col = await self._collection()
        doc = await col.find_one(
            {"subject_id": subject_id, "purpose": purpose.value},
            sort=[("created_at", -1)],
        )
        return OneTimeCodeDoc.from_mongo(doc)

    async def _invalidate_active(self, subject_id: str, purpose: Purpose, now: datetime) -> int:
        col = await self._collection()
        result = await col.update_many(
            {"subject_id": subject_id, "purpose": purpose.value, "is_used": False},
            {"$set": {"is_used": True, "used_at": now}},
        )
        return result.modified_count

    async def _insert(self, record: OneTimeCodeDoc) -> OneTimeCodeDoc:
        col = await self._collection()
        try:
            result = await col.insert_one(record.to_mongo())
        except DuplicateKeyError:
            # Another instance issued for the same pair between our
            # invalidate and insert; the partial unique index caught it.
            log.warning(
                "otp_issue_conflict",
                tenant=self.tenant.label,
                subject_id=record.subject_id,
                purpose=record.purpose.value,
            )
            await self._invalidate_active(record.subject_id, record.purpose, record.created_at)
            result = await col.insert_one(record.to_mongo())
        return record.model_copy(update={"id": result.inserted_id})

    async def record_attempt(self, code_id: Union[str, ObjectId]) -> int:
        oid = _oid(code_id)
        col = await self._collection()
        updated = await col.find_one_and_update(
            {"_id": oid, "attempts": {"$lt": self.max_attempts}},
            {"$inc": {"attempts": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            return int(updated["attempts"])

        existing = await col.find_one({"_id": oid}, projection={"attempts": 1})
        if existing is None:
            raise NotFoundError("Code not found")
        raise MaxAttemptsExceeded("Maximum verification attempts reached")

    async def consume(self, code_id: Union[str, ObjectId]) -> bool:
        col = await self._collection()
        result = await col.update_one(
            {"_id": _oid(code_id), "is_used": False},
            {"$set": {"is_used": True, "used_at": self.now()}},
        )
        return result.modified_count == 1

    async def record_delivery(
        self,
        code_id: Union[str, ObjectId],
        status: DeliveryStatus,
        provider: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None:
        col = await self._collection()
        await col.update_one(
            {"_id": _oid(code_id)},
            {
                "$set": {
                    "delivery_status": DeliveryStatus(status).value,
                    "provider": provider,
                    "message_id": message_id,
                }
            },
        )

    async def reap(self, now: Optional[datetime] = None) -> int:
        now = now or self.now()
        col = await self._collection()
        result = await col.delete_many(
            {
                "$or": [
                    {"expires_at": {"$lte": now}},
                    {"is_used": True, "used_at": {"$lt": now - self.retention}},
                ]
            }
        )
        return result.deleted_count
