"""
Password-reset grants.

A grant is the short-lived, single-use token handed back after a
passwordReset code verifies. Only SHA-256(token) is stored. Issuing a new
grant retires the subject's earlier unused grants.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable

from infrastructure.database.connection_manager import ConnectionManager
from infrastructure.database.handles import TenantKey
from schemas.models.reset_grant import ResetGrantDoc
from shared.crypto import hash_token, token_matches
from shared.datetime_utils import utcnow
from shared.generators import generate_secure_token
from shared.logging import get_logger

log = get_logger(__name__)

RESET_GRANT_COLLECTION = "reset_grants"


class ResetGrantStore(ABC):
    def __init__(
        self,
        *,
        ttl_seconds: int = 900,
        token_length: int = 32,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self.token_length = token_length
        self._clock = clock

    async def issue(self, subject_id: str) -> tuple[str, datetime]:
        token = generate_secure_token(self.token_length)
        now = self._clock()
        grant = ResetGrantDoc(
            subject_id=subject_id,
            token_hash=hash_token(token),
            created_at=now,
            expires_at=now + self.ttl,
        )
        await self._retire(subject_id, now)
        await self._save(grant)
        log.info("reset_grant_issued", subject_id=subject_id)
        return token, grant.expires_at

    async def consume(self, subject_id: str, token: str) -> bool:
        """True exactly once for a valid, unexpired grant."""
        consumed = await self._consume(subject_id, token, self._clock())
        log.info("reset_grant_consumed", subject_id=subject_id, success=consumed)
        return consumed

    @abstractmethod
    async def _retire(self, subject_id: str, now: datetime) -> None: ...

    @abstractmethod
    async def _save(self, grant: ResetGrantDoc) -> None: ...

    @abstractmethod
    async def _consume(self, subject_id: str, token: str, now: datetime) -> bool: ...


class InMemoryResetGrantStore(ResetGrantStore):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._grants: list[ResetGrantDoc] = []

    async def _retire(self, subject_id: str, now: datetime) -> None:
        for grant in self._grants:
            if grant.subject_id == subject_id and grant.used_at is None:
                grant.used_at = now

    async def _save(self, grant: ResetGrantDoc) -> None:
        self._grants = [g for g in self._grants if g.expires_at > grant.created_at]
        self._grants.append(grant)

    async def _consume(self, subject_id: str, token: str, now: datetime) -> bool:
        for grant in self._grants:
            if (
                grant.subject_id == subject_id
                and grant.used_at is None
                and grant.expires_at > now
                and token_matches(token, grant.token_hash)
            ):
                grant.used_at = now
                return True
        return False


class MongoResetGrantStore(ResetGrantStore):
    def __init__(self, connections: ConnectionManager, tenant: TenantKey, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._connections = connections
        self.tenant = tenant

    async def _collection(self) -> Any:
        handle = await self._connections.get_handle(self.tenant)
        return handle.collection(RESET_GRANT_COLLECTION)

    async def _retire(self, subject_id: str, now: datetime) -> None:
        col = await self._collection()
        await col.update_many(
            {"subject_id": subject_id, "used_at": None},
            {"$set": {"used_at": now}},
        )

    async def _save(self, grant: ResetGrantDoc) -> None:
        col = await self._collection()
        await col.insert_one(grant.to_mongo())

    async def _consume(self, subject_id: str, token: str, now: datetime) -> bool:
        col = await self._collection()
        # Lookup is by digest, so timing does not depend on the token's prefix
        updated = await col.find_one_and_update(
            {
                "subject_id": subject_id,
                "token_hash": hash_token(token),
                "used_at": None,
                "expires_at": {"$gt": now},
            },
            {"$set": {"used_at": now}},
        )
        return updated is not None
