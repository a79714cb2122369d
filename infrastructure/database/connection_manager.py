"""Connection manager for the rider and passenger tenant databases.

Owns the lifecycle of exactly one handle per tenant:
  1. Return the cached handle while it is live.
  2. Otherwise connect: bounded attempts, each with distinct connect / socket /
     server-selection budgets and a ping probe under an explicit deadline.
  3. Between attempts sleep base * 2**attempt + jitter.
  4. Bad URIs and authentication failures are not retried.
  5. Out of attempts: STRICT raises DatabaseUnavailableError; PERMISSIVE
     hands out a NoopHandle and tries a real connect again later.

Callers must re-request the handle for each unit of work and never keep it
across a reconnect.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Optional, Union

from pymongo import AsyncMongoClient
from pymongo.errors import ConfigurationError, OperationFailure, PyMongoError

from config import DatabaseSettings, RuntimeMode
from errors import DatabaseUnavailableError
from infrastructure.database.handles import Handle, MongoHandle, NoopHandle, TenantKey
from infrastructure.database.listeners import TenantConnectivityListener
from shared.logging import get_logger
from shared.masking import redact_uri

log = get_logger(__name__)

# AuthenticationFailed / Unauthorized; waiting will not fix these
_AUTH_ERROR_CODES = {13, 18}

ClientFactory = Callable[..., Any]


class ConnectionManager:
    def __init__(
        self,
        settings: DatabaseSettings,
        *,
        client_factory: ClientFactory = AsyncMongoClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory
        self._sleep = sleep
        self._rng = rng
        self._clock = clock
        self._handles: dict[TenantKey, Handle] = {}
        self._stale: set[TenantKey] = set()
        self._degraded_at: dict[TenantKey, float] = {}
        self._locks = {tenant: asyncio.Lock() for tenant in TenantKey}

    @property
    def mode(self) -> RuntimeMode:
        return self._settings.runtime_mode

    def uri_for(self, tenant: TenantKey) -> str:
        if tenant is TenantKey.RIDER:
            return self._settings.mongodb_rider_uri
        return self._settings.mongodb_passenger_uri

    def db_name_for(self, tenant: TenantKey) -> str:
        if tenant is TenantKey.RIDER:
            return self._settings.rider_db_name
        return self._settings.passenger_db_name

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after failed *attempt* (1-based)."""
        jitter = self._rng() * self._settings.backoff_max_jitter_seconds
        return self._settings.backoff_base_seconds * (2**attempt) + jitter

    async def get_handle(self, tenant: Union[TenantKey, str]) -> Handle:
        tenant = TenantKey.parse(tenant)
        handle = self._handles.get(tenant)
        if handle is not None and self._is_usable(tenant, handle):
            return handle

        async with self._locks[tenant]:
            # Another waiter may have reconnected while we queued
            handle = self._handles.get(tenant)
            if handle is not None and self._is_usable(tenant, handle):
                return handle
            if handle is not None:
                await self._discard(tenant, handle)

            handle = await self._connect(tenant)
            self._handles[tenant] = handle
            return handle

    def invalidate(self, tenant: Union[TenantKey, str]) -> None:
        """Mark a tenant's handle stale; the next get_handle() reconnects."""
        tenant = TenantKey.parse(tenant)
        if tenant in self._handles:
            self._stale.add(tenant)
            log.info("mongo_handle_invalidated", tenant=tenant.label)

    def is_degraded(self, tenant: Union[TenantKey, str]) -> bool:
        handle = self._handles.get(TenantKey.parse(tenant))
        return handle is not None and handle.is_degraded

    async def warm_up(self) -> None:
        """Connect every tenant up front (raises in STRICT mode on failure)."""
        for tenant in TenantKey:
            await self.get_handle(tenant)

    async def close(self) -> None:
        for tenant, handle in list(self._handles.items()):
            await self._discard(tenant, handle)
        self._handles.clear()
        log.info("mongo_connections_closed")

    # ── internals ────────────────────────────────────────────────────────────

    def _is_usable(self, tenant: TenantKey, handle: Handle) -> bool:
        if tenant in self._stale:
            return False
        if handle.is_degraded:
            degraded_at = self._degraded_at.get(tenant, 0.0)
            return self._clock() - degraded_at < self._settings.degraded_retry_seconds
        return True

    async def _discard(self, tenant: TenantKey, handle: Handle) -> None:
        self._handles.pop(tenant, None)
        self._stale.discard(tenant)
        try:
            await handle.close()
        except Exception as e:
            log.warning(
                "mongo_handle_close_failed",
                tenant=tenant.label,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _client_options(self, tenant: TenantKey) -> dict:
        return {
            "connectTimeoutMS": self._settings.connect_timeout_ms,
            "socketTimeoutMS": self._settings.socket_timeout_ms,
            "serverSelectionTimeoutMS": self._settings.server_selection_timeout_ms,
            "appname": f"okada-{tenant.label}",
            "retryWrites": True,
            "tz_aware": True,
            "event_listeners": [
                TenantConnectivityListener(tenant, self._on_connectivity_lost)
            ],
        }

    def _on_connectivity_lost(self, tenant: TenantKey) -> None:
        # Runs on the driver's monitor; only flags, never closes
        self._stale.add(tenant)

    async def _connect(self, tenant: TenantKey) -> Handle:
        uri = self.uri_for(tenant)
        safe_uri = redact_uri(uri)
        attempts = self._settings.max_connect_attempts
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            client = None
            log.info(
                "mongo_connect_attempt",
                tenant=tenant.label,
                uri=safe_uri,
                attempt=attempt,
                max_attempts=attempts,
            )
            try:
                client = self._client_factory(uri, **self._client_options(tenant))
                handle = MongoHandle(tenant, client, self.db_name_for(tenant))
                await asyncio.wait_for(
                    handle.ping(), timeout=self._settings.ping_timeout_seconds
                )
            except ConfigurationError as e:
                await self._close_quietly(client)
                self._fail_fast(tenant, safe_uri, e)
            except OperationFailure as e:
                await self._close_quietly(client)
                if e.code in _AUTH_ERROR_CODES:
                    self._fail_fast(tenant, safe_uri, e)
                last_error = e
            except (PyMongoError, asyncio.TimeoutError, OSError) as e:
                await self._close_quietly(client)
                last_error = e
            else:
                self._stale.discard(tenant)
                self._degraded_at.pop(tenant, None)
                log.info(
                    "mongo_connected", tenant=tenant.label, uri=safe_uri, attempt=attempt
                )
                return handle

            log.warning(
                "mongo_connect_failed",
                tenant=tenant.label,
                uri=safe_uri,
                attempt=attempt,
                error=str(last_error),
                error_type=type(last_error).__name__,
            )
            if attempt < attempts:
                delay = self.backoff_delay(attempt)
                log.info("mongo_connect_retry_scheduled", tenant=tenant.label, delay=delay)
                await self._sleep(delay)

        return self._exhausted(tenant, safe_uri, last_error)

    def _fail_fast(self, tenant: TenantKey, safe_uri: str, error: BaseException) -> None:
        log.error(
            "mongo_config_invalid",
            tenant=tenant.label,
            uri=safe_uri,
            error=str(error),
            error_type=type(error).__name__,
        )
        raise DatabaseUnavailableError(
            f"Invalid database configuration for {tenant.label}",
            tenant=tenant.value,
        ) from error

    def _exhausted(
        self, tenant: TenantKey, safe_uri: str, error: Optional[BaseException]
    ) -> Handle:
        if self.mode is RuntimeMode.STRICT:
            log.critical(
                "mongo_unavailable",
                tenant=tenant.label,
                uri=safe_uri,
                attempts=self._settings.max_connect_attempts,
            )
            raise DatabaseUnavailableError(
                f"Database for {tenant.label} unreachable after "
                f"{self._settings.max_connect_attempts} attempts",
                tenant=tenant.value,
            ) from error

        log.error(
            "mongo_degraded_mode",
            tenant=tenant.label,
            uri=safe_uri,
            retry_in_seconds=self._settings.degraded_retry_seconds,
        )
        self._degraded_at[tenant] = self._clock()
        return NoopHandle(tenant)

    @staticmethod
    async def _close_quietly(client: Any) -> None:
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            log.debug("mongo_client_close_failed", error=str(e))
