"""
Application error hierarchy and FastAPI exception handlers.

AppError is the base for all typed errors. The global exception handler
converts AppError subclasses to consistent JSON responses.

Verification failures deliberately share one public message so callers
cannot tell a wrong code from an expired or missing one; the precise
reason travels on ``exc.reason`` for logging only.

Non-AppError exceptions bubble up as 500s (with Sentry reporting in production).
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

GENERIC_VERIFICATION_MESSAGE = "Invalid or expired verification code"


class AppError(Exception):
    """Base application error. All typed errors inherit from this."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details

    def to_dict(self) -> dict:
        payload: dict = {"error": self.message, "code": self.error_code}
        if self.field is not None:
            payload["field"] = self.field
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(AppError):
    status_code = 400
    error_code = "validation_error"


class InvalidDestinationError(ValidationError):
    error_code = "invalid_destination"


class NotFoundError(AppError):
    status_code = 404
    error_code = "not_found"


class RateLimitError(AppError):
    """Caller must wait; ``retry_after`` is a hint in whole seconds."""

    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        category: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.category = category

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.category is not None:
            payload["category"] = self.category
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload


class RateLimitedError(RateLimitError):
    """A rate-limit category's window is exhausted for this key."""


class ResendCooldownError(RateLimitError):
    error_code = "resend_cooldown"


class DatabaseUnavailableError(AppError):
    """Tenant database unreachable after every connection attempt."""

    status_code = 503
    error_code = "database_unavailable"

    def __init__(self, message: str, *, tenant: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.tenant = tenant


class DeliveryFailedError(AppError):
    """Every configured provider for a channel failed."""

    status_code = 502
    error_code = "delivery_failed"


class TokenConfigurationError(AppError):
    """No usable signing key for session tokens."""

    status_code = 500
    error_code = "token_configuration_error"


class MaxAttemptsExceeded(AppError):
    """Raised by the code store once a code's attempt cap is reached."""

    status_code = 429
    error_code = "max_attempts_exceeded"


class VerificationError(AppError):
    """Base for terminal, per-call verification failures. Never retried."""

    status_code = 400
    error_code = "invalid_code"
    reason: str = "invalid"

    def __init__(
        self,
        message: str = GENERIC_VERIFICATION_MESSAGE,
        *,
        attempts_left: int = 0,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.attempts_left = attempts_left


class NotFoundOrExpiredError(VerificationError):
    reason = "not_found_or_expired"


class AlreadyUsedError(VerificationError):
    reason = "already_used"


class InvalidCodeError(VerificationError):
    reason = "invalid"


class AttemptsExhaustedError(VerificationError):
    error_code = "attempts_exhausted"
    reason = "attempts_exhausted"

    def __init__(
        self,
        message: str = "Too many failed attempts. Please request a new code.",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        headers = None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.status_code, content=exc.to_dict(), headers=headers
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        # Sentry integration: if sentry_sdk is initialized it will auto-capture
        # unhandled exceptions before this handler fires.
        return JSONResponse(
            status_code=500,
            content={"error": "An internal server error occurred.", "code": "internal_error"},
        )
