"""Index definitions for the per-tenant OTP collections."""

from __future__ import annotations

from pymongo import ASCENDING, DESCENDING

from infrastructure.database.connection_manager import ConnectionManager
from infrastructure.database.handles import TenantKey
from repositories.mongo_code_store import OTP_COLLECTION
from repositories.reset_grants import RESET_GRANT_COLLECTION
from shared.logging import get_logger

log = get_logger(__name__)


async def ensure_indexes(connections: ConnectionManager) -> None:
    """Create indexes on both tenants. Idempotent; safe on every startup."""
    for tenant in TenantKey:
        handle = await connections.get_handle(tenant)
        otps = handle.collection(OTP_COLLECTION)
        await otps.create_index(
            [("subject_id", ASCENDING), ("purpose", ASCENDING), ("created_at", DESCENDING)],
            name="subject_purpose_created",
        )
        await otps.create_index([("destination", ASCENDING)], name="destination")
        # Time-based reap; read paths check expiry themselves
        await otps.create_index(
            [("expires_at", ASCENDING)], name="expires_at_ttl", expireAfterSeconds=0
        )
        await otps.create_index(
            [("subject_id", ASCENDING), ("purpose", ASCENDING)],
            name="one_active_code",
            unique=True,
            partialFilterExpression={"is_used": False},
        )

        grants = handle.collection(RESET_GRANT_COLLECTION)
        await grants.create_index(
            [("subject_id", ASCENDING), ("token_hash", ASCENDING)], name="subject_token"
        )
        await grants.create_index(
            [("expires_at", ASCENDING)], name="expires_at_ttl", expireAfterSeconds=0
        )
        log.info("mongo_indexes_ensured", tenant=tenant.label, degraded=handle.is_degraded)
