"""
FastAPI application factory.
create_app() is the single entry point for building the app.

Startup order matters: the database handles are warmed first so a STRICT
deployment refuses to start (and therefore never takes traffic) when either
tenant is unreachable.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import sentry_sdk
from fastapi import FastAPI
from pymongo.errors import PyMongoError

from config import AppSettings
from errors import DatabaseUnavailableError, TokenConfigurationError, register_error_handlers
from infrastructure.database.connection_manager import ConnectionManager
from infrastructure.delivery.factory import build_providers
from infrastructure.http_client import HttpClient
from repositories.indexes import ensure_indexes
from routes.health_routes import router as health_router
from services.accounts import MongoAccountDirectory
from services.otp_service import build_otp_registry
from services.rate_limiter import RateLimiter
from services.reaper import CodeReaper
from services.tokens import SessionTokenIssuer
from shared.logging import get_logger, setup_logging

log = get_logger(__name__)


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    """Create and return a fully configured FastAPI application."""
    if settings is None:
        settings = AppSettings()

    setup_logging(settings.logging, env=settings.env)

    # Initialise Sentry before anything else so it captures startup errors
    if settings.sentry.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry.sentry_dsn,
            send_default_pii=settings.sentry.sentry_send_pii,
            traces_sample_rate=settings.sentry.sentry_traces_sample_rate,
            environment=settings.env,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # ── Startup ──────────────────────────────────────────────────────────
        app.state.settings = settings

        connections = ConnectionManager(settings.db)
        try:
            await connections.warm_up()
        except DatabaseUnavailableError as e:
            log.critical("startup_aborted", reason=e.message, tenant=e.tenant)
            await connections.close()
            raise
        app.state.connections = connections

        try:
            await ensure_indexes(connections)
        except PyMongoError as e:
            log.error("mongo_index_setup_failed", error=str(e), error_type=type(e).__name__)

        rate_limiter = RateLimiter.from_settings(settings.rate_limits, settings.redis)
        app.state.rate_limiter = rate_limiter

        http_client = HttpClient(timeout=settings.otp.provider_timeout_seconds)
        providers = build_providers(settings, http_client)

        try:
            tokens: Optional[SessionTokenIssuer] = SessionTokenIssuer(settings.jwt)
        except TokenConfigurationError:
            if settings.is_production:
                raise
            log.warning("session_tokens_disabled", reason="no signing key configured")
            tokens = None

        registry = build_otp_registry(
            settings,
            connections=connections,
            limiter=rate_limiter,
            providers=providers,
            accounts=MongoAccountDirectory(connections),
            tokens=tokens,
        )
        app.state.otp_registry = registry

        reaper = CodeReaper(registry.stores, settings.otp.reap_interval_seconds)
        reaper.start()

        log.info("app_started", env=settings.env, mode=settings.db.runtime_mode.value)
        yield

        # ── Shutdown ─────────────────────────────────────────────────────────
        await reaper.stop()
        await http_client.aclose()
        await connections.close()

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    register_error_handlers(app)
    app.include_router(health_router)

    return app
