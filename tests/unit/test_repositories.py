"""Unit tests for reset grants, the account directory and index setup."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId

from infrastructure.database.handles import NoopHandle, TenantKey
from repositories.indexes import ensure_indexes
from repositories.reset_grants import InMemoryResetGrantStore, MongoResetGrantStore
from schemas.models.otp import Channel
from services.accounts import InMemoryAccountDirectory, MongoAccountDirectory
from shared.crypto import hash_token

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = NOW

    def __call__(self):
        return self.now


def _collection():
    col = MagicMock()
    col.find_one = AsyncMock(return_value=None)
    col.find_one_and_update = AsyncMock(return_value=None)
    col.insert_one = AsyncMock()
    col.update_one = AsyncMock(return_value=MagicMock(matched_count=1))
    col.update_many = AsyncMock()
    col.create_index = AsyncMock()
    return col


def _connections(collections):
    """``collections`` maps collection name to mock; same for both tenants."""
    handle = MagicMock(is_degraded=False)
    handle.collection.side_effect = lambda name: collections[name]
    connections = MagicMock()
    connections.get_handle = AsyncMock(return_value=handle)
    return connections


# ── Reset grants ──────────────────────────────────────────────────────────────


class TestInMemoryResetGrants:
    async def test_single_use(self):
        grants = InMemoryResetGrantStore(clock=FakeClock())
        token, expires_at = await grants.issue("u1")
        assert expires_at == NOW + timedelta(minutes=15)
        assert await grants.consume("u1", token) is True
        assert await grants.consume("u1", token) is False

    async def test_wrong_subject(self):
        grants = InMemoryResetGrantStore(clock=FakeClock())
        token, _ = await grants.issue("u1")
        assert await grants.consume("u2", token) is False

    async def test_expired(self):
        clock = FakeClock()
        grants = InMemoryResetGrantStore(clock=clock, ttl_seconds=60)
        token, _ = await grants.issue("u1")
        clock.now += timedelta(seconds=61)
        assert await grants.consume("u1", token) is False

    async def test_new_grant_retires_older(self):
        grants = InMemoryResetGrantStore(clock=FakeClock())
        old, _ = await grants.issue("u1")
        new, _ = await grants.issue("u1")
        assert await grants.consume("u1", old) is False
        assert await grants.consume("u1", new) is True


class TestMongoResetGrants:
    async def test_issue_stores_hash_only(self):
        col = _collection()
        grants = MongoResetGrantStore(
            _connections({"reset_grants": col}), TenantKey.RIDER, clock=lambda: NOW
        )
        token, _ = await grants.issue("u1")
        doc = col.insert_one.await_args.args[0]
        assert doc["token_hash"] == hash_token(token)
        assert token not in doc.values()
        col.update_many.assert_awaited_once_with(
            {"subject_id": "u1", "used_at": None}, {"$set": {"used_at": NOW}}
        )

    async def test_consume_filters_unused_unexpired(self):
        col = _collection()
        col.find_one_and_update.return_value = {"_id": ObjectId()}
        grants = MongoResetGrantStore(
            _connections({"reset_grants": col}), TenantKey.RIDER, clock=lambda: NOW
        )
        assert await grants.consume("u1", "tok") is True
        query = col.find_one_and_update.await_args.args[0]
        assert query == {
            "subject_id": "u1",
            "token_hash": hash_token("tok"),
            "used_at": None,
            "expires_at": {"$gt": NOW},
        }

    async def test_consume_miss(self):
        grants = MongoResetGrantStore(
            _connections({"reset_grants": _collection()}), TenantKey.RIDER, clock=lambda: NOW
        )
        assert await grants.consume("u1", "tok") is False


# ── Account directory ─────────────────────────────────────────────────────────


class TestMongoAccountDirectory:
    async def test_resolve_tries_rider_then_passenger(self):
        rider_users, passenger_users = _collection(), _collection()
        oid = ObjectId()
        passenger_users.find_one.return_value = {"_id": oid}

        def handle_for(tenant):
            handle = MagicMock()
            handle.collection.return_value = (
                rider_users if tenant is TenantKey.RIDER else passenger_users
            )
            return handle

        connections = MagicMock()
        connections.get_handle = AsyncMock(side_effect=handle_for)
        directory = MongoAccountDirectory(connections)

        resolved = await directory.resolve_subject(Channel.EMAIL, " P@Example.com ")

        assert resolved.tenant is TenantKey.PASSENGER
        assert resolved.subject_id == str(oid)
        rider_users.find_one.assert_awaited_once_with(
            {"email": "p@example.com"}, projection={"_id": 1}
        )

    async def test_resolve_none(self):
        directory = MongoAccountDirectory(_connections({"users": _collection()}))
        assert await directory.resolve_subject(Channel.SMS, "+15550001234") is None

    async def test_mark_phone_verified(self):
        users = _collection()
        directory = MongoAccountDirectory(_connections({"users": users}))
        oid = ObjectId()
        assert await directory.mark_contact_verified(TenantKey.RIDER, str(oid), Channel.SMS)
        users.update_one.assert_awaited_once_with(
            {"_id": oid}, {"$set": {"is_phone_verified": True, "is_verified": True}}
        )

    async def test_mark_missing_account(self):
        users = _collection()
        users.update_one.return_value = MagicMock(matched_count=0)
        directory = MongoAccountDirectory(_connections({"users": users}))
        assert await directory.mark_contact_verified("B", "legacy-id", Channel.EMAIL) is False


def test_in_memory_directory_lowercases_email():
    directory = InMemoryAccountDirectory()
    directory.add(TenantKey.RIDER, "u1", email="Rider@Example.com")
    assert directory.get("A", "u1")["email"] == "rider@example.com"


# ── Indexes ───────────────────────────────────────────────────────────────────


class TestEnsureIndexes:
    async def test_creates_named_indexes_per_tenant(self):
        otps, grants = _collection(), _collection()
        connections = _connections({"otps": otps, "reset_grants": grants})

        await ensure_indexes(connections)

        assert connections.get_handle.await_count == 2
        names = [c.kwargs["name"] for c in otps.create_index.await_args_list]
        assert names.count("one_active_code") == 2
        assert set(names) == {
            "subject_purpose_created",
            "destination",
            "expires_at_ttl",
            "one_active_code",
        }

    async def test_partial_unique_and_ttl_options(self):
        otps, grants = _collection(), _collection()
        await ensure_indexes(_connections({"otps": otps, "reset_grants": grants}))
        by_name = {c.kwargs["name"]: c.kwargs for c in otps.create_index.await_args_list}
        assert by_name["one_active_code"]["unique"] is True
        assert by_name["one_active_code"]["partialFilterExpression"] == {"is_used": False}
        assert by_name["expires_at_ttl"]["expireAfterSeconds"] == 0

    async def test_degraded_tenant_is_harmless(self):
        connections = MagicMock()
        connections.get_handle = AsyncMock(side_effect=lambda t: NoopHandle(t))
        await ensure_indexes(connections)


@pytest.mark.parametrize("channel, field", [(Channel.SMS, "phone_number"), (Channel.EMAIL, "email")])
async def test_in_memory_find_by_contact(channel, field):
    directory = InMemoryAccountDirectory()
    directory.add(TenantKey.PASSENGER, "p1", email="p@example.com", phone_number="+15550001234")
    contact = "+15550001234" if field == "phone_number" else "p@example.com"
    assert await directory.find_account_by_contact("B", channel, contact) == "p1"
    assert await directory.find_account_by_contact("A", channel, contact) is None
