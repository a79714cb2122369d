"""Unit tests for CodeStore lifecycle rules (in-memory backend)."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from errors import InvalidDestinationError, MaxAttemptsExceeded, NotFoundError
from repositories.code_store import InMemoryCodeStore
from schemas.models.otp import Channel, DeliveryStatus, Purpose
from shared.crypto import hash_token

START = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class SequenceCodes:
    """Deterministic code factory: 100001, 100002, ..."""

    def __init__(self):
        self.n = 100000

    def __call__(self, length: int) -> str:
        self.n += 1
        return str(self.n)[-length:].rjust(length, "0")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryCodeStore(clock=clock, code_factory=SequenceCodes())


async def _issue(store, subject="u1", purpose=Purpose.LOGIN):
    return await store.issue(subject, purpose, Channel.SMS, "+15550001234")


# ── issue ─────────────────────────────────────────────────────────────────────


class TestIssue:
    async def test_returns_plain_code_stores_hash(self, store):
        record = await _issue(store)
        assert record.code == "100001"
        assert record.code_hash == hash_token("100001")
        stored = await store.latest("u1", Purpose.LOGIN)
        assert stored.code is None
        assert stored.code_hash == record.code_hash

    async def test_sets_expiry_from_clock(self, store, clock):
        record = await _issue(store)
        assert record.created_at == START
        assert record.expires_at == START + timedelta(minutes=10)
        assert record.attempts == 0
        assert record.delivery_status is DeliveryStatus.PENDING

    async def test_default_code_is_six_digits(self, clock):
        record = await _issue(InMemoryCodeStore(clock=clock))
        assert len(record.code) == 6
        assert record.code.isdigit()

    async def test_rejects_bad_destination(self, store):
        with pytest.raises(InvalidDestinationError) as exc_info:
            await store.issue("u1", Purpose.LOGIN, Channel.SMS, "not-a-phone")
        assert exc_info.value.field == "destination"
        assert len(store) == 0

    async def test_rejects_email_on_sms_channel(self, store):
        with pytest.raises(InvalidDestinationError):
            await store.issue("u1", Purpose.LOGIN, Channel.SMS, "rider@example.com")

    async def test_new_code_supersedes_previous(self, store, clock):
        first = await _issue(store)
        clock.advance(seconds=5)
        second = await _issue(store)

        latest = await store.latest("u1", Purpose.LOGIN)
        assert latest.id == second.id
        assert store._records[str(first.id)].is_used is True
        active = [r for r in store._records.values() if not r.is_used]
        assert [r.id for r in active] == [second.id]

    async def test_pairs_are_independent(self, store):
        login = await _issue(store, purpose=Purpose.LOGIN)
        await _issue(store, purpose=Purpose.VERIFICATION)
        await _issue(store, subject="u2", purpose=Purpose.LOGIN)
        assert (await store.latest("u1", Purpose.LOGIN)).id == login.id
        assert store._records[str(login.id)].is_used is False

    async def test_concurrent_issues_leave_one_active(self, store):
        await asyncio.gather(*(_issue(store) for _ in range(10)))
        active = [r for r in store._records.values() if not r.is_used]
        assert len(active) == 1


# ── latest / invalidate ───────────────────────────────────────────────────────


class TestLatest:
    async def test_none_when_absent(self, store):
        assert await store.latest("nobody", Purpose.LOGIN) is None

    async def test_expired_reads_as_none(self, store, clock):
        await _issue(store)
        clock.advance(minutes=10)
        assert await store.latest("u1", Purpose.LOGIN) is None

    async def test_just_before_expiry_still_visible(self, store, clock):
        await _issue(store)
        clock.advance(minutes=9, seconds=59)
        assert await store.latest("u1", Purpose.LOGIN) is not None

    async def test_used_code_is_still_returned(self, store):
        record = await _issue(store)
        await store.consume(record.id)
        latest = await store.latest("u1", Purpose.LOGIN)
        assert latest.is_used is True

    async def test_accepts_string_purpose(self, store):
        await _issue(store)
        assert await store.latest("u1", "login") is not None


class TestInvalidate:
    async def test_retires_active_codes(self, store):
        record = await _issue(store)
        assert await store.invalidate("u1", Purpose.LOGIN) == 1
        assert store._records[str(record.id)].is_used is True

    async def test_nothing_to_retire(self, store):
        assert await store.invalidate("u1", Purpose.LOGIN) == 0


class TestRetire:
    async def test_retire_targets_one_code(self, store, clock):
        older = await _issue(store)
        clock.advance(seconds=1)
        newer = await _issue(store)

        assert await store.retire(older.id) is False
        assert store._records[str(newer.id)].is_used is False

    async def test_retire_active_code(self, store):
        record = await _issue(store)
        assert await store.retire(record.id) is True
        assert store._records[str(record.id)].is_used is True


# ── attempts / consume / delivery ─────────────────────────────────────────────


class TestAttempts:
    async def test_increments_until_cap(self, store):
        record = await _issue(store)
        counts = [await store.record_attempt(record.id) for _ in range(5)]
        assert counts == [1, 2, 3, 4, 5]
        with pytest.raises(MaxAttemptsExceeded):
            await store.record_attempt(record.id)
        assert store._records[str(record.id)].attempts == 5

    async def test_custom_cap(self, clock):
        store = InMemoryCodeStore(clock=clock, max_attempts=2)
        record = await _issue(store)
        await store.record_attempt(record.id)
        await store.record_attempt(record.id)
        with pytest.raises(MaxAttemptsExceeded):
            await store.record_attempt(record.id)

    async def test_unknown_id(self, store):
        with pytest.raises(NotFoundError):
            await store.record_attempt(ObjectId())

    async def test_new_code_starts_at_zero(self, store):
        first = await _issue(store)
        await store.record_attempt(first.id)
        second = await _issue(store)
        assert second.attempts == 0


class TestConsume:
    async def test_single_use(self, store, clock):
        record = await _issue(store)
        clock.advance(seconds=30)
        assert await store.consume(record.id) is True
        assert await store.consume(record.id) is False
        assert store._records[str(record.id)].used_at == START + timedelta(seconds=30)

    async def test_accepts_string_id(self, store):
        record = await _issue(store)
        assert await store.consume(str(record.id)) is True


async def test_record_delivery(store):
    record = await _issue(store)
    await store.record_delivery(record.id, DeliveryStatus.SENT, "twilio", "SM1")
    stored = store._records[str(record.id)]
    assert stored.delivery_status is DeliveryStatus.SENT
    assert stored.provider == "twilio"
    assert stored.message_id == "SM1"


# ── reap ──────────────────────────────────────────────────────────────────────


class TestReap:
    async def test_removes_expired(self, store, clock):
        await _issue(store)
        clock.advance(minutes=11)
        assert await store.reap() == 1
        assert len(store) == 0

    async def test_keeps_recent_used_codes(self, store, clock):
        record = await _issue(store, purpose=Purpose.LOGIN)
        await store.consume(record.id)
        # Still within expiry and retention
        assert await store.reap() == 0
        assert len(store) == 1

    async def test_removes_used_codes_past_retention(self, store, clock):
        record = await _issue(store)
        await store.consume(record.id)
        later = START + timedelta(days=31)
        assert await store.reap(now=later) == 1

    async def test_keeps_active_unexpired(self, store):
        await _issue(store)
        assert await store.reap() == 0
