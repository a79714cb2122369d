"""
OTP facade: the operations collaborators call.

    request_otp     RequestOTP      rate-limited as otp_request
    resend_otp      ResendOTP       otp_request + per-pair cooldown
    verify_otp      VerifyOTP       rate-limited as otp_verify
    get_otp_status  GetOTPStatus    read-only, never returns the code

An OtpService is bound to one tenant. OtpServiceRegistry holds one per
tenant and resolves contacts through the AccountDirectory, so callers that
start from a phone number or email never pick a tenant themselves.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional, Union

from config import AppSettings
from errors import NotFoundError, ResendCooldownError, VerificationError
from infrastructure.database.connection_manager import ConnectionManager
from infrastructure.database.handles import TenantKey
from infrastructure.delivery.factory import ProviderChains
from infrastructure.delivery.rendering import MessageRenderer
from repositories.code_store import CodeStore
from repositories.mongo_code_store import MongoCodeStore
from repositories.reset_grants import MongoResetGrantStore, ResetGrantStore
from schemas.dto.otp import DeliveryResult, OtpStatus, VerifyResult
from schemas.models.otp import Channel, Purpose
from services.accounts import AccountDirectory
from services.delivery import DeliveryPipeline
from services.rate_limiter import RateCategory, RateLimiter
from services.tokens import SessionTokenIssuer
from services.verification import VerificationEngine
from shared.datetime_utils import seconds_until
from shared.keyed_lock import KeyedLock
from shared.logging import get_logger
from shared.validators import infer_channel

log = get_logger(__name__)


class OtpService:
    def __init__(
        self,
        tenant: TenantKey,
        *,
        store: CodeStore,
        pipeline: DeliveryPipeline,
        engine: VerificationEngine,
        limiter: RateLimiter,
        reset_grants: ResetGrantStore,
        resend_cooldown_seconds: int = 60,
    ) -> None:
        self.tenant = tenant
        self.store = store
        self._pipeline = pipeline
        self._engine = engine
        self._limiter = limiter
        self._reset_grants = reset_grants
        self._cooldown = resend_cooldown_seconds
        # Held across check and delivery so concurrent resends see each other
        self._resend_locks = KeyedLock()

    def _rate_key(self, caller_key: Optional[str], subject_id: str) -> str:
        if caller_key:
            return caller_key
        return f"subject:{self.tenant.value}:{subject_id}"

    async def request_otp(
        self,
        subject_id: str,
        purpose: Purpose,
        channel: Channel,
        destination: str,
        *,
        caller_key: Optional[str] = None,
    ) -> DeliveryResult:
        self._engine.ensure_supported(purpose)
        self._limiter.enforce(self._rate_key(caller_key, subject_id), RateCategory.OTP_REQUEST)
        return await self._pipeline.deliver(subject_id, purpose, channel, destination)

    async def resend_otp(
        self,
        subject_id: str,
        purpose: Purpose,
        destination: str,
        *,
        caller_key: Optional[str] = None,
    ) -> DeliveryResult:
        purpose = Purpose(purpose)
        self._engine.ensure_supported(purpose)
        self._limiter.enforce(self._rate_key(caller_key, subject_id), RateCategory.OTP_REQUEST)

        async with self._resend_locks.hold((subject_id, purpose)):
            previous = await self.store.latest(subject_id, purpose)
            if previous is not None:
                resend_at = previous.created_at + timedelta(seconds=self._cooldown)
                wait = seconds_until(resend_at, self.store.now())
                if wait > 0:
                    raise ResendCooldownError(
                        f"Please wait {wait} seconds before requesting a new code",
                        retry_after=wait,
                        category="resend_cooldown",
                    )

            if previous is not None and previous.destination == destination:
                channel = previous.channel
            else:
                channel = Channel(infer_channel(destination))

            await self.store.invalidate(subject_id, purpose)
            log.info(
                "otp_resend",
                tenant=self.tenant.label,
                subject_id=subject_id,
                purpose=purpose.value,
                channel=channel.value,
            )
            return await self._pipeline.deliver(subject_id, purpose, channel, destination)

    async def verify_otp(
        self,
        subject_id: str,
        purpose: Purpose,
        code: str,
        *,
        caller_key: Optional[str] = None,
    ) -> VerifyResult:
        self._limiter.enforce(self._rate_key(caller_key, subject_id), RateCategory.OTP_VERIFY)
        try:
            return await self._engine.verify(subject_id, purpose, code)
        except VerificationError as e:
            return VerifyResult(
                success=False,
                attempts_left=e.attempts_left,
                error=e.message,
                error_code=e.error_code,
            )

    async def get_otp_status(self, subject_id: str, purpose: Purpose) -> OtpStatus:
        record = await self.store.latest(subject_id, Purpose(purpose))
        if record is None:
            return OtpStatus(exists=False)
        return OtpStatus(
            exists=True,
            expires_at=record.expires_at,
            attempts=record.attempts,
            is_used=record.is_used,
        )

    async def consume_reset_grant(self, subject_id: str, token: str) -> bool:
        return await self._reset_grants.consume(subject_id, token)


class OtpServiceRegistry:
    def __init__(self, services: dict[TenantKey, OtpService], accounts: AccountDirectory) -> None:
        self._services = services
        self.accounts = accounts

    def for_tenant(self, tenant: Union[TenantKey, str]) -> OtpService:
        return self._services[TenantKey.parse(tenant)]

    async def for_contact(
        self, channel: Channel, destination: str
    ) -> tuple[OtpService, str]:
        resolved = await self.accounts.resolve_subject(Channel(channel), destination)
        if resolved is None:
            raise NotFoundError("No account found for this contact")
        return self.for_tenant(resolved.tenant), resolved.subject_id

    @property
    def stores(self) -> list[CodeStore]:
        return [service.store for service in self._services.values()]


def build_otp_registry(
    settings: AppSettings,
    *,
    connections: ConnectionManager,
    limiter: RateLimiter,
    providers: ProviderChains,
    accounts: AccountDirectory,
    tokens: Optional[SessionTokenIssuer],
) -> OtpServiceRegistry:
    """Wire one Mongo-backed OtpService per tenant, sharing limiter and providers."""
    otp = settings.otp
    renderer = MessageRenderer(
        app_name=settings.app_name,
        app_url=settings.app_url,
        expiry_minutes=max(1, otp.otp_expiry_seconds // 60),
    )

    services: dict[TenantKey, OtpService] = {}
    for tenant in TenantKey:
        store = MongoCodeStore(
            connections,
            tenant,
            code_length=otp.otp_code_length,
            expiry_seconds=otp.otp_expiry_seconds,
            max_attempts=otp.otp_max_attempts,
            retention_days=otp.used_code_retention_days,
        )
        grants = MongoResetGrantStore(
            connections,
            tenant,
            ttl_seconds=otp.reset_grant_ttl_seconds,
            token_length=otp.reset_grant_length,
        )
        services[tenant] = OtpService(
            tenant,
            store=store,
            pipeline=DeliveryPipeline(
                store,
                providers,
                renderer=renderer,
                provider_timeout_seconds=otp.provider_timeout_seconds,
            ),
            engine=VerificationEngine(
                store,
                tenant=tenant,
                accounts=accounts,
                reset_grants=grants,
                tokens=tokens,
            ),
            limiter=limiter,
            reset_grants=grants,
            resend_cooldown_seconds=otp.otp_resend_cooldown_seconds,
        )
    return OtpServiceRegistry(services, accounts)
