"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (and .env file).

Every settings class is frozen: the tree is built once at startup and handed
to the connection manager, rate limiter and delivery pipeline by injection.
Nothing patches timeouts or limits at runtime.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeMode(str, Enum):
    """How the service behaves when a tenant database cannot be reached.

    STRICT: connection failure is fatal; the service must not serve.
    PERMISSIVE: a no-op handle stands in so non-critical paths stay up.
    """

    STRICT = "strict"
    PERMISSIVE = "permissive"


class DatabaseSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    mongodb_rider_uri: str
    mongodb_passenger_uri: str
    rider_db_name: str = "okada-rider"
    passenger_db_name: str = "okada-passenger"

    # Separate budgets; cloud clusters under load need generous values
    connect_timeout_ms: int = Field(default=180_000, gt=0)
    socket_timeout_ms: int = Field(default=240_000, gt=0)
    server_selection_timeout_ms: int = Field(default=180_000, gt=0)

    max_connect_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_jitter_seconds: float = Field(default=1.0, ge=0)
    degraded_retry_seconds: int = Field(default=30, ge=1)

    runtime_mode: RuntimeMode = RuntimeMode.STRICT

    @property
    def ping_timeout_seconds(self) -> float:
        return self.connect_timeout_ms / 1000


class RedisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    # Optional; single-instance deployments count in process memory
    redis_uri: Optional[str] = None
    redis_timeout_seconds: float = Field(default=0.5, gt=0)
    redis_retry_after_seconds: int = Field(default=30, ge=1)


class RateLimitSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    rate_limit_window_seconds: int = Field(default=15 * 60, gt=0)
    rate_limit_max_requests: int = Field(default=100, gt=0)

    auth_window_seconds: int = Field(default=15 * 60, gt=0)
    auth_max_requests: int = Field(default=10, gt=0)

    otp_request_window_seconds: int = Field(default=60 * 60, gt=0)
    otp_request_max_requests: int = Field(default=5, gt=0)

    otp_verify_window_seconds: int = Field(default=10 * 60, gt=0)
    otp_verify_max_requests: int = Field(default=10, gt=0)

    api_window_seconds: int = Field(default=15 * 60, gt=0)
    api_max_requests: int = Field(default=300, gt=0)


class OtpSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    otp_code_length: int = Field(default=6, ge=4, le=12)
    otp_expiry_seconds: int = Field(default=600, gt=0)
    otp_max_attempts: int = Field(default=5, ge=1)
    otp_resend_cooldown_seconds: int = Field(default=60, ge=0)

    reset_grant_ttl_seconds: int = Field(default=900, gt=0)
    reset_grant_length: int = Field(default=32, ge=16)

    used_code_retention_days: int = Field(default=30, ge=1)
    reap_interval_seconds: int = Field(default=300, gt=0)

    provider_timeout_seconds: float = Field(default=10.0, gt=0)


class SmsSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    vonage_api_key: str = ""
    vonage_api_secret: str = ""
    vonage_from: str = "OkadaRide"

    sms_provider_order: list[str] = ["twilio", "vonage", "log"]


class EmailSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    zepto_api_token: str = ""
    zepto_from_email: str = "noreply@okadaride.africa"
    zepto_from_name: str = "Okada Ride Africa"

    brevo_api_key: str = ""
    brevo_from_email: str = "noreply@okadaride.africa"
    brevo_from_name: str = "Okada Ride Africa"

    email_provider_order: list[str] = ["zeptomail", "brevo", "log"]


class JWTSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    jwt_issuer: str = "okadaride.africa"
    jwt_audience: str = "okadaride.africa.api"
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 2592000

    # RS256 keys (preferred)
    jwt_private_key: str = ""
    jwt_public_key: str = ""

    # HS256 fallback (used when RS256 keys are absent)
    jwt_secret: str = ""

    @property
    def use_rs256(self) -> bool:
        return bool(self.jwt_private_key and self.jwt_public_key)


class LoggingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    log_level: str = "INFO"
    log_format: str = "console"  # "json" in production

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, v: str) -> str:
        if v not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return v


class SentrySettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    sentry_dsn: str = ""
    sentry_send_pii: bool = False
    sentry_traces_sample_rate: float = 0.1


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    env: str = "development"
    app_name: str = "Okada Ride Africa"
    app_url: str = "https://okadaride.africa"

    # Sub-configs (composed via model_validator below)
    db: Optional[DatabaseSettings] = None
    redis: Optional[RedisSettings] = None
    rate_limits: Optional[RateLimitSettings] = None
    otp: Optional[OtpSettings] = None
    sms: Optional[SmsSettings] = None
    email: Optional[EmailSettings] = None
    jwt: Optional[JWTSettings] = None
    logging: Optional[LoggingSettings] = None
    sentry: Optional[SentrySettings] = None

    @model_validator(mode="before")
    @classmethod
    def _populate_sub_configs(cls, data: Any) -> Any:
        # Frozen models cannot be patched after validation, so sub-configs
        # are filled in from the same env/dotenv source beforehand.
        if not isinstance(data, dict):
            return data
        defaults = {
            "db": DatabaseSettings,
            "redis": RedisSettings,
            "rate_limits": RateLimitSettings,
            "otp": OtpSettings,
            "sms": SmsSettings,
            "email": EmailSettings,
            "jwt": JWTSettings,
            "logging": LoggingSettings,
            "sentry": SentrySettings,
        }
        for name, factory in defaults.items():
            if data.get(name) is None:
                data[name] = factory()
        return data

    @property
    def is_production(self) -> bool:
        return self.env == "production"
