"""pymongo monitoring listeners that mark a tenant handle stale.

The driver reports topology changes from its own monitor. When a tenant's
cluster loses every readable server the cached handle is flagged; the next
get_handle() discards it and reconnects instead of handing out a dead client.
"""

from __future__ import annotations

from typing import Callable

from pymongo import monitoring

from infrastructure.database.handles import TenantKey
from shared.logging import get_logger

log = get_logger(__name__)


class TenantConnectivityListener(
    monitoring.TopologyListener, monitoring.ServerHeartbeatListener
):
    def __init__(self, tenant: TenantKey, on_lost: Callable[[TenantKey], None]) -> None:
        self.tenant = tenant
        self._on_lost = on_lost

    # TopologyListener

    def opened(self, event: monitoring.TopologyOpenedEvent) -> None:
        pass

    def description_changed(
        self, event: monitoring.TopologyDescriptionChangedEvent
    ) -> None:
        was_up = event.previous_description.has_readable_server()
        is_up = event.new_description.has_readable_server()
        if was_up and not is_up:
            log.warning("mongo_topology_lost", tenant=self.tenant.label)
            self._on_lost(self.tenant)

    def closed(self, event: monitoring.TopologyClosedEvent) -> None:
        pass

    # ServerHeartbeatListener

    def started(self, event: monitoring.ServerHeartbeatStartedEvent) -> None:
        pass

    def succeeded(self, event: monitoring.ServerHeartbeatSucceededEvent) -> None:
        pass

    def failed(self, event: monitoring.ServerHeartbeatFailedEvent) -> None:
        log.debug(
            "mongo_heartbeat_failed",
            tenant=self.tenant.label,
            error_type=type(event.reply).__name__,
        )
