"""Unit tests for the VerificationEngine state machine and post-actions."""

from datetime import datetime, timedelta, timezone

import pytest
from structlog.testing import capture_logs

from config import JWTSettings
from errors import (
    GENERIC_VERIFICATION_MESSAGE,
    AlreadyUsedError,
    AttemptsExhaustedError,
    InvalidCodeError,
    NotFoundOrExpiredError,
    TokenConfigurationError,
)
from infrastructure.database.handles import TenantKey
from repositories.code_store import InMemoryCodeStore
from repositories.reset_grants import InMemoryResetGrantStore
from schemas.models.otp import Channel, Purpose
from services.accounts import InMemoryAccountDirectory
from services.tokens import SessionTokenIssuer
from services.verification import VerificationEngine

START = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
PHONE = "+15550001234"


class FakeClock:
    def __init__(self):
        self.now = START

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryCodeStore(clock=clock, code_factory=lambda n: "123456")


@pytest.fixture
def accounts():
    directory = InMemoryAccountDirectory()
    directory.add(TenantKey.RIDER, "u1", email="u1@example.com", phone_number=PHONE)
    return directory


@pytest.fixture
def grants(clock):
    return InMemoryResetGrantStore(clock=clock)


@pytest.fixture
def tokens():
    return SessionTokenIssuer(JWTSettings(jwt_secret="unit-test-secret-0123456789abcdef"))


@pytest.fixture
def engine(store, accounts, grants, tokens):
    return VerificationEngine(
        store, tenant=TenantKey.RIDER, accounts=accounts, reset_grants=grants, tokens=tokens
    )


async def _issue(store, purpose=Purpose.LOGIN, channel=Channel.SMS, destination=PHONE):
    return await store.issue("u1", purpose, channel, destination)


# ── Failure paths ─────────────────────────────────────────────────────────────


class TestFailures:
    async def test_no_code(self, engine):
        with pytest.raises(NotFoundOrExpiredError) as exc_info:
            await engine.verify("u1", Purpose.LOGIN, "123456")
        assert exc_info.value.message == GENERIC_VERIFICATION_MESSAGE

    async def test_wrong_code_counts_attempt(self, engine, store):
        record = await _issue(store)
        with pytest.raises(InvalidCodeError) as exc_info:
            await engine.verify("u1", Purpose.LOGIN, "000000")
        assert exc_info.value.attempts_left == 4
        assert store._records[str(record.id)].attempts == 1
        assert store._records[str(record.id)].is_used is False

    async def test_expired_code(self, engine, store, clock):
        await _issue(store)
        clock.now = START + timedelta(minutes=10, seconds=1)
        with pytest.raises(NotFoundOrExpiredError):
            await engine.verify("u1", Purpose.LOGIN, "123456")

    async def test_missing_expired_and_used_look_like_a_first_wrong_guess(
        self, engine, store, clock
    ):
        await _issue(store)
        with pytest.raises(InvalidCodeError) as wrong:
            await engine.verify("u1", Purpose.LOGIN, "000000")

        with pytest.raises(NotFoundOrExpiredError) as missing:
            await engine.verify("u2", Purpose.LOGIN, "123456")

        await engine.verify("u1", Purpose.LOGIN, "123456")
        with pytest.raises(AlreadyUsedError) as used:
            await engine.verify("u1", Purpose.LOGIN, "123456")

        await _issue(store)
        clock.now = START + timedelta(minutes=10, seconds=1)
        with pytest.raises(NotFoundOrExpiredError) as expired:
            await engine.verify("u1", Purpose.LOGIN, "123456")

        for exc_info in (missing, used, expired):
            assert exc_info.value.attempts_left == wrong.value.attempts_left == 4
            assert exc_info.value.to_dict() == wrong.value.to_dict()

    async def test_wrong_purpose_not_found(self, engine, store):
        await _issue(store, purpose=Purpose.VERIFICATION)
        with pytest.raises(NotFoundOrExpiredError):
            await engine.verify("u1", Purpose.LOGIN, "123456")

    async def test_attempts_exhausted_after_cap(self, engine, store):
        record = await _issue(store)
        for expected_left in (4, 3, 2, 1, 0):
            with pytest.raises(InvalidCodeError) as exc_info:
                await engine.verify("u1", Purpose.LOGIN, "000000")
            assert exc_info.value.attempts_left == expected_left

        # Even the right code is refused once the cap is reached
        with pytest.raises(AttemptsExhaustedError):
            await engine.verify("u1", Purpose.LOGIN, "123456")
        assert store._records[str(record.id)].is_used is True
        assert store._records[str(record.id)].attempts == 5

    async def test_after_exhaustion_code_reads_as_used(self, engine, store):
        await _issue(store)
        for _ in range(5):
            with pytest.raises(InvalidCodeError):
                await engine.verify("u1", Purpose.LOGIN, "000000")
        with pytest.raises(AttemptsExhaustedError):
            await engine.verify("u1", Purpose.LOGIN, "000000")
        with pytest.raises(AlreadyUsedError):
            await engine.verify("u1", Purpose.LOGIN, "123456")

    async def test_reason_logged_not_exposed(self, engine, store):
        await _issue(store)
        with capture_logs() as logs:
            with pytest.raises(InvalidCodeError) as exc_info:
                await engine.verify("u1", Purpose.LOGIN, "000000")
        assert exc_info.value.to_dict()["error"] == GENERIC_VERIFICATION_MESSAGE
        failed = [e for e in logs if e["event"] == "otp_verification_failed"]
        assert failed[0]["reason"] == "invalid"
        assert all("000000" not in str(e) for e in logs)


# ── Success and single use ────────────────────────────────────────────────────


class TestSuccess:
    async def test_login_issues_session(self, engine, store, tokens):
        await _issue(store)
        result = await engine.verify("u1", Purpose.LOGIN, "123456")
        assert result.success is True
        assert result.attempts_left == 4
        token = result.post_action_token
        assert token.kind == "session"
        claims = tokens.decode(token.session.access_token)
        assert claims["sub"] == "u1"
        assert claims["tenant"] == "rider"

    async def test_submitted_code_is_trimmed(self, engine, store):
        await _issue(store)
        assert (await engine.verify("u1", Purpose.LOGIN, " 123456 ")).success is True

    async def test_single_use(self, engine, store):
        await _issue(store)
        await engine.verify("u1", Purpose.LOGIN, "123456")
        with pytest.raises(AlreadyUsedError):
            await engine.verify("u1", Purpose.LOGIN, "123456")

    async def test_right_code_after_wrong_attempts(self, engine, store):
        await _issue(store)
        for _ in range(2):
            with pytest.raises(InvalidCodeError):
                await engine.verify("u1", Purpose.LOGIN, "999999")
        result = await engine.verify("u1", Purpose.LOGIN, "123456")
        assert result.attempts_left == 2


class TestPostActions:
    async def test_verification_marks_contact(self, engine, store, accounts):
        await _issue(store, purpose=Purpose.VERIFICATION)
        result = await engine.verify("u1", Purpose.VERIFICATION, "123456")
        assert result.post_action_token.kind == "contact_verified"
        account = accounts.get(TenantKey.RIDER, "u1")
        assert account["is_phone_verified"] is True
        assert account["is_verified"] is True
        assert account["is_email_verified"] is False

    async def test_email_verification_marks_email(self, engine, store, accounts):
        await _issue(
            store, purpose=Purpose.VERIFICATION, channel=Channel.EMAIL, destination="u1@example.com"
        )
        await engine.verify("u1", Purpose.VERIFICATION, "123456")
        assert accounts.get(TenantKey.RIDER, "u1")["is_email_verified"] is True

    async def test_verification_for_missing_account_still_succeeds(
        self, store, grants, tokens
    ):
        engine = VerificationEngine(
            store,
            tenant=TenantKey.RIDER,
            accounts=InMemoryAccountDirectory(),
            reset_grants=grants,
            tokens=tokens,
        )
        await _issue(store, purpose=Purpose.VERIFICATION)
        result = await engine.verify("u1", Purpose.VERIFICATION, "123456")
        assert result.success is True

    async def test_password_reset_issues_grant(self, engine, store, grants):
        await _issue(store, purpose=Purpose.PASSWORD_RESET)
        result = await engine.verify("u1", Purpose.PASSWORD_RESET, "123456")
        token = result.post_action_token
        assert token.kind == "reset_grant"
        assert token.expires_at == START + timedelta(minutes=15)
        assert await grants.consume("u1", token.reset_grant) is True
        assert await grants.consume("u1", token.reset_grant) is False

    async def test_login_without_token_issuer_keeps_code(self, store, accounts, grants):
        engine = VerificationEngine(
            store, tenant=TenantKey.RIDER, accounts=accounts, reset_grants=grants
        )
        record = await _issue(store)
        with pytest.raises(TokenConfigurationError):
            await engine.verify("u1", Purpose.LOGIN, "123456")

        stored = store._records[str(record.id)]
        assert stored.is_used is False
        assert stored.attempts == 0

    async def test_other_purposes_need_no_token_issuer(self, store, accounts, grants):
        engine = VerificationEngine(
            store, tenant=TenantKey.RIDER, accounts=accounts, reset_grants=grants
        )
        await _issue(store, purpose=Purpose.PASSWORD_RESET)
        result = await engine.verify("u1", Purpose.PASSWORD_RESET, "123456")
        assert result.success is True
