"""
Account-storage collaborator.

The OTP subsystem never queries account collections itself; it goes through
an AccountDirectory. resolve_subject() is the single place that decides which
tenant a contact belongs to (rider first, then passenger), so nothing else
repeats the try-A-then-B lookup.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from bson import ObjectId

from infrastructure.database.connection_manager import ConnectionManager
from infrastructure.database.handles import TenantKey
from schemas.models.otp import Channel
from shared.logging import get_logger
from shared.masking import mask_destination

log = get_logger(__name__)

USERS_COLLECTION = "users"

_CONTACT_FIELD = {Channel.SMS: "phone_number", Channel.EMAIL: "email"}
_VERIFIED_FLAG = {Channel.SMS: "is_phone_verified", Channel.EMAIL: "is_email_verified"}


@dataclass(frozen=True)
class ResolvedSubject:
    tenant: TenantKey
    subject_id: str


class AccountDirectory(Protocol):
    async def find_account_by_contact(
        self, tenant: TenantKey, channel: Channel, destination: str
    ) -> Optional[str]: ...

    async def resolve_subject(
        self, channel: Channel, destination: str
    ) -> Optional[ResolvedSubject]: ...

    async def mark_contact_verified(
        self, tenant: TenantKey, subject_id: str, channel: Channel
    ) -> bool: ...


def _normalise(channel: Channel, destination: str) -> str:
    destination = destination.strip()
    return destination.lower() if channel is Channel.EMAIL else destination


class MongoAccountDirectory:
    """Looks accounts up in each tenant's ``users`` collection."""

    def __init__(self, connections: ConnectionManager) -> None:
        self._connections = connections

    async def _users(self, tenant: TenantKey) -> Any:
        handle = await self._connections.get_handle(tenant)
        return handle.collection(USERS_COLLECTION)

    async def find_account_by_contact(
        self, tenant: TenantKey, channel: Channel, destination: str
    ) -> Optional[str]:
        channel = Channel(channel)
        users = await self._users(TenantKey.parse(tenant))
        doc = await users.find_one(
            {_CONTACT_FIELD[channel]: _normalise(channel, destination)},
            projection={"_id": 1},
        )
        return str(doc["_id"]) if doc else None

    async def resolve_subject(
        self, channel: Channel, destination: str
    ) -> Optional[ResolvedSubject]:
        for tenant in (TenantKey.RIDER, TenantKey.PASSENGER):
            subject_id = await self.find_account_by_contact(tenant, channel, destination)
            if subject_id is not None:
                return ResolvedSubject(tenant=tenant, subject_id=subject_id)
        log.info(
            "account_not_found",
            channel=Channel(channel).value,
            destination=mask_destination(destination),
        )
        return None

    async def mark_contact_verified(
        self, tenant: TenantKey, subject_id: str, channel: Channel
    ) -> bool:
        channel = Channel(channel)
        users = await self._users(TenantKey.parse(tenant))
        key: Any = ObjectId(subject_id) if ObjectId.is_valid(subject_id) else subject_id
        result = await users.update_one(
            {"_id": key},
            {"$set": {_VERIFIED_FLAG[channel]: True, "is_verified": True}},
        )
        return result.matched_count == 1


class InMemoryAccountDirectory:
    """Dict-backed directory for single-process setups and tests."""

    def __init__(self) -> None:
        self._accounts: dict[TenantKey, dict[str, dict]] = {t: {} for t in TenantKey}

    def add(
        self,
        tenant: TenantKey,
        subject_id: str,
        *,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> None:
        self._accounts[TenantKey.parse(tenant)][subject_id] = {
            "email": email.lower() if email else None,
            "phone_number": phone_number,
            "is_email_verified": False,
            "is_phone_verified": False,
            "is_verified": False,
        }

    def get(self, tenant: TenantKey, subject_id: str) -> Optional[dict]:
        return self._accounts[TenantKey.parse(tenant)].get(subject_id)

    async def find_account_by_contact(
        self, tenant: TenantKey, channel: Channel, destination: str
    ) -> Optional[str]:
        channel = Channel(channel)
        wanted = _normalise(channel, destination)
        for subject_id, account in self._accounts[TenantKey.parse(tenant)].items():
            if account[_CONTACT_FIELD[channel]] == wanted:
                return subject_id
        return None

    async def resolve_subject(
        self, channel: Channel, destination: str
    ) -> Optional[ResolvedSubject]:
        for tenant in (TenantKey.RIDER, TenantKey.PASSENGER):
            subject_id = await self.find_account_by_contact(tenant, channel, destination)
            if subject_id is not None:
                return ResolvedSubject(tenant=tenant, subject_id=subject_id)
        return None

    async def mark_contact_verified(
        self, tenant: TenantKey, subject_id: str, channel: Channel
    ) -> bool:
        account = self.get(tenant, subject_id)
        if account is None:
            return False
        account[_VERIFIED_FLAG[Channel(channel)]] = True
        account["is_verified"] = True
        return True
