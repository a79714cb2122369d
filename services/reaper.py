"""Background sweep of expired and long-used one-time codes.

Best-effort housekeeping only: read paths enforce expiry themselves, and
Mongo's TTL index removes expired records on its own schedule. This loop
also clears used codes older than the retention window.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence

from repositories.code_store import CodeStore
from shared.logging import get_logger

log = get_logger(__name__)


class CodeReaper:
    def __init__(self, stores: Sequence[CodeStore], interval_seconds: float = 300) -> None:
        self._stores = list(stores)
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        removed = 0
        for store in self._stores:
            try:
                removed += await store.reap()
            except Exception as e:
                log.warning(
                    "otp_reap_failed",
                    store=type(store).__name__,
                    tenant=getattr(getattr(store, "tenant", None), "label", None),
                    error=str(e),
                    error_type=type(e).__name__,
                )
        if removed:
            log.info("otp_reaped", removed=removed)
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._loop(), name="otp-reaper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
