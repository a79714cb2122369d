"""
FastAPI dependency providers.

All injectable dependencies are defined here as plain functions used with
FastAPI's Depends() system. Everything they return was built once in the
app lifespan and lives on app.state.
"""

from __future__ import annotations

from fastapi import Request

from config import AppSettings
from infrastructure.database.connection_manager import ConnectionManager
from services.otp_service import OtpServiceRegistry
from services.rate_limiter import RateLimiter


def get_settings(request: Request) -> AppSettings:
    """Return the AppSettings instance stored on app.state."""
    return request.app.state.settings


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connections


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_otp_registry(request: Request) -> OtpServiceRegistry:
    """Per-tenant OTP services; use for_tenant() or for_contact()."""
    return request.app.state.otp_registry
