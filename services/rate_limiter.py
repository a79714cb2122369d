"""
Per-caller, per-category request throttling.

Built on the ``limits`` library (the engine underneath flask-limiter) with a
fixed-window strategy. Two storages are in play:

    memory:// is process-local and always available
    redis://… is shared across instances when REDIS_URI is set

``allow()`` never awaits. If the shared store errors, the limiter logs, counts
in memory instead and keeps serving: it fails open. The shared store is
retried after ``redis_retry_after_seconds``.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.errors import StorageError
from limits.storage import MemoryStorage, Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter
from redis.exceptions import RedisError

from config import RateLimitSettings, RedisSettings
from errors import RateLimitedError
from shared.logging import get_logger
from shared.masking import redact_uri

log = get_logger(__name__)

_STORAGE_ERRORS = (StorageError, RedisError, ConnectionError, TimeoutError)


class RateCategory(str, Enum):
    GLOBAL = "global"
    AUTH = "auth"
    OTP_REQUEST = "otp_request"
    OTP_VERIFY = "otp_verify"
    API = "api"


@dataclass(frozen=True)
class RateLimitPolicy:
    window_seconds: int
    max_requests: int
    message: str

    def as_item(self) -> RateLimitItem:
        return RateLimitItemPerSecond(self.max_requests, self.window_seconds)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    category: RateCategory
    remaining: int
    reset_at: float
    retry_after: int
    message: Optional[str] = None


def build_policies(settings: RateLimitSettings) -> dict[RateCategory, RateLimitPolicy]:
    return {
        RateCategory.GLOBAL: RateLimitPolicy(
            settings.rate_limit_window_seconds,
            settings.rate_limit_max_requests,
            "Too many requests, please try again later.",
        ),
        RateCategory.AUTH: RateLimitPolicy(
            settings.auth_window_seconds,
            settings.auth_max_requests,
            "Too many login attempts, please try again later.",
        ),
        RateCategory.OTP_REQUEST: RateLimitPolicy(
            settings.otp_request_window_seconds,
            settings.otp_request_max_requests,
            "Too many OTP requests, please try again after some time.",
        ),
        RateCategory.OTP_VERIFY: RateLimitPolicy(
            settings.otp_verify_window_seconds,
            settings.otp_verify_max_requests,
            "Too many verification attempts, please try again later.",
        ),
        RateCategory.API: RateLimitPolicy(
            settings.api_window_seconds,
            settings.api_max_requests,
            "Too many requests, please try again later.",
        ),
    }


class RateLimiter:
    def __init__(
        self,
        settings: RateLimitSettings,
        *,
        shared_storage: Optional[Storage] = None,
        retry_shared_after: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policies = build_policies(settings)
        self._items = {c: p.as_item() for c, p in self._policies.items()}
        self._memory_storage = MemoryStorage()
        self._memory = FixedWindowRateLimiter(self._memory_storage)
        self._shared_storage = shared_storage
        self._shared = (
            FixedWindowRateLimiter(shared_storage) if shared_storage is not None else None
        )
        self._retry_shared_after = retry_shared_after
        self._clock = clock
        self._shared_failed_at: Optional[float] = None

    @classmethod
    def from_settings(
        cls, settings: RateLimitSettings, redis_settings: RedisSettings
    ) -> "RateLimiter":
        shared = None
        if redis_settings.redis_uri:
            shared = storage_from_string(
                redis_settings.redis_uri,
                wrap_exceptions=True,
                socket_timeout=redis_settings.redis_timeout_seconds,
                socket_connect_timeout=redis_settings.redis_timeout_seconds,
            )
            log.info("rate_limit_storage", backend="redis", uri=redact_uri(redis_settings.redis_uri))
        else:
            log.info("rate_limit_storage", backend="memory")
        return cls(
            settings,
            shared_storage=shared,
            retry_shared_after=redis_settings.redis_retry_after_seconds,
        )

    def policy(self, category: RateCategory) -> RateLimitPolicy:
        return self._policies[category]

    @property
    def backend(self) -> str:
        if self._shared is None:
            return "memory"
        return "memory-fallback" if self._using_fallback() else "redis"

    def allow(self, key: str, category: RateCategory) -> bool:
        """Count one request for *key* and report whether it may proceed."""
        return self.check(key, category).allowed

    def check(self, key: str, category: RateCategory) -> RateLimitDecision:
        category = RateCategory(category)
        item = self._items[category]

        limiter = self._active()
        if limiter is not self._memory:
            try:
                return self._hit(limiter, item, key, category)
            except _STORAGE_ERRORS as e:
                self._fall_back(e)
        return self._hit(self._memory, item, key, category)

    def enforce(self, key: str, category: RateCategory) -> RateLimitDecision:
        """Like check(), but raise RateLimitedError when the window is spent."""
        decision = self.check(key, category)
        if not decision.allowed:
            log.warning(
                "rate_limit_exceeded",
                category=decision.category.value,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(
                decision.message or "Too many requests",
                retry_after=decision.retry_after,
                category=decision.category.value,
            )
        return decision

    def reset(self, key: str, category: RateCategory) -> None:
        category = RateCategory(category)
        item = self._items[category]
        self._memory.clear(item, category.value, key)
        if self._shared is not None and not self._using_fallback():
            try:
                self._shared.clear(item, category.value, key)
            except _STORAGE_ERRORS as e:
                self._fall_back(e)

    def shared_store_healthy(self) -> Optional[bool]:
        """None when no shared store is configured."""
        if self._shared is None:
            return None
        try:
            return bool(self._shared_storage.check())
        except _STORAGE_ERRORS:
            return False

    # ── internals ────────────────────────────────────────────────────────────

    def _hit(
        self,
        limiter: FixedWindowRateLimiter,
        item: RateLimitItem,
        key: str,
        category: RateCategory,
    ) -> RateLimitDecision:
        allowed = limiter.hit(item, category.value, key)
        stats = limiter.get_window_stats(item, category.value, key)
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        return RateLimitDecision(
            allowed=allowed,
            category=category,
            remaining=stats.remaining,
            reset_at=stats.reset_time,
            retry_after=0 if allowed else retry_after,
            message=None if allowed else self._policies[category].message,
        )

    def _using_fallback(self) -> bool:
        if self._shared_failed_at is None:
            return False
        if self._clock() - self._shared_failed_at >= self._retry_shared_after:
            self._shared_failed_at = None
            log.info("rate_limit_shared_store_retry")
            return False
        return True

    def _active(self) -> FixedWindowRateLimiter:
        if self._shared is None or self._using_fallback():
            return self._memory
        return self._shared

    def _fall_back(self, error: BaseException) -> None:
        self._shared_failed_at = self._clock()
        log.warning(
            "rate_limit_store_unavailable",
            fallback="memory",
            error=str(error),
            error_type=type(error).__name__,
        )
