"""
Health check endpoint.

GET /health checks both tenant databases and the rate-limit store.
Rules:
- A tenant that cannot be reached → "unhealthy" (503); in STRICT mode the
  service must not take traffic without its database.
- A tenant running on the no-op handle (PERMISSIVE) → "degraded" (200).
- Rate limiter counting in memory after losing Redis → "degraded" (200).
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from infrastructure.database.handles import TenantKey

router = APIRouter(tags=["health"])

_PING_TIMEOUT_SECONDS = 5.0


@router.get("/health")
async def health_check(request: Request) -> JSONResponse:
    checks: dict[str, str] = {}
    overall = "healthy"

    connections = request.app.state.connections
    for tenant in TenantKey:
        name = f"mongodb_{tenant.label}"
        try:
            handle = await connections.get_handle(tenant)
            if handle.is_degraded:
                checks[name] = "degraded"
                if overall == "healthy":
                    overall = "degraded"
                continue
            await asyncio.wait_for(handle.ping(), timeout=_PING_TIMEOUT_SECONDS)
            checks[name] = "ok"
        except Exception:
            connections.invalidate(tenant)
            checks[name] = "error"
            overall = "unhealthy"

    limiter = request.app.state.rate_limiter
    shared_ok = limiter.shared_store_healthy()
    if shared_ok is None:
        checks["rate_limiter"] = "memory"
    elif shared_ok and limiter.backend == "redis":
        checks["rate_limiter"] = "ok"
    else:
        checks["rate_limiter"] = "fallback"
        if overall == "healthy":
            overall = "degraded"

    status_code = 503 if overall == "unhealthy" else 200
    return JSONResponse(
        status_code=status_code,
        content={"status": overall, "checks": checks},
    )
