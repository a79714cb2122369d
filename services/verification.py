"""
Verification engine.

Per code: issued -> verified | expired | attempts_exhausted.

verify() runs under the Code Store's (subject, purpose) lock so a resend
cannot slip a new code in between the read and the consume. Every failure
raises a VerificationError subclass carrying the generic public message;
the specific reason is only logged.
"""

from __future__ import annotations

from typing import Optional

from errors import (
    AlreadyUsedError,
    AttemptsExhaustedError,
    InvalidCodeError,
    MaxAttemptsExceeded,
    NotFoundOrExpiredError,
    TokenConfigurationError,
    VerificationError,
)
from infrastructure.database.handles import TenantKey
from repositories.code_store import CodeStore
from repositories.reset_grants import ResetGrantStore
from schemas.dto.otp import PostActionToken, VerifyResult
from schemas.models.otp import OneTimeCodeDoc, Purpose
from services.accounts import AccountDirectory
from services.tokens import SessionTokenIssuer
from shared.crypto import token_matches
from shared.logging import get_logger

log = get_logger(__name__)


class VerificationEngine:
    def __init__(
        self,
        store: CodeStore,
        *,
        tenant: TenantKey,
        accounts: AccountDirectory,
        reset_grants: ResetGrantStore,
        tokens: Optional[SessionTokenIssuer] = None,
    ) -> None:
        self._store = store
        self._tenant = tenant
        self._accounts = accounts
        self._reset_grants = reset_grants
        self._tokens = tokens

    def ensure_supported(self, purpose: Purpose) -> None:
        """Refuse a purpose whose post-action cannot run, before any code is spent."""
        if Purpose(purpose) is Purpose.LOGIN and self._tokens is None:
            raise TokenConfigurationError(
                "Login verification is unavailable: no session token issuer is configured"
            )

    async def verify(self, subject_id: str, purpose: Purpose, submitted: str) -> VerifyResult:
        purpose = Purpose(purpose)
        self.ensure_supported(purpose)
        submitted = str(submitted).strip()

        try:
            async with self._store.locked(subject_id, purpose):
                record, attempts_left = await self._check(subject_id, purpose, submitted)
        except VerificationError as e:
            log.info(
                "otp_verification_failed",
                tenant=self._tenant.label,
                subject_id=subject_id,
                purpose=purpose.value,
                reason=e.reason,
                attempts_left=e.attempts_left,
            )
            raise

        token = await self._post_action(record)
        log.info(
            "otp_verified",
            tenant=self._tenant.label,
            subject_id=subject_id,
            purpose=purpose.value,
        )
        return VerifyResult(success=True, attempts_left=attempts_left, post_action_token=token)

    async def _check(
        self, subject_id: str, purpose: Purpose, submitted: str
    ) -> tuple[OneTimeCodeDoc, int]:
        # Failures that are not a wrong guess report what a first wrong guess
        # against a live code would, so the result cannot reveal expiry.
        unattributed_left = max(0, self._store.max_attempts - 1)

        record = await self._store.latest(subject_id, purpose)
        if record is None:
            raise NotFoundOrExpiredError(attempts_left=unattributed_left)
        if record.is_used:
            raise AlreadyUsedError(attempts_left=unattributed_left)

        try:
            attempts = await self._store.record_attempt(record.id)
        except MaxAttemptsExceeded:
            await self._store.consume(record.id)
            raise AttemptsExhaustedError() from None

        attempts_left = max(0, self._store.max_attempts - attempts)
        if not token_matches(submitted, record.code_hash):
            raise InvalidCodeError(attempts_left=attempts_left)

        if not await self._store.consume(record.id):
            raise AlreadyUsedError(attempts_left=unattributed_left)
        return record, attempts_left

    async def _post_action(self, record: OneTimeCodeDoc) -> PostActionToken:
        if record.purpose is Purpose.VERIFICATION:
            updated = await self._accounts.mark_contact_verified(
                self._tenant, record.subject_id, record.channel
            )
            if not updated:
                log.warning(
                    "contact_verified_account_missing",
                    tenant=self._tenant.label,
                    subject_id=record.subject_id,
                )
            return PostActionToken(kind="contact_verified")

        if record.purpose is Purpose.PASSWORD_RESET:
            grant, expires_at = await self._reset_grants.issue(record.subject_id)
            return PostActionToken(kind="reset_grant", reset_grant=grant, expires_at=expires_at)

        session = self._tokens.issue(record.subject_id, self._tenant.label)
        return PostActionToken(kind="session", session=session)
