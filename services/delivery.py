"""
Delivery pipeline: issue a code, then walk the channel's provider chain.

    1. CodeStore.issue() is called first; it is the only source of the code.
    2. Providers are tried in order, each under its own deadline.
    3. A failure or timeout is logged (destination masked) and the next
       provider is tried; the first success wins.
    4. If every provider fails the code this call issued is retired and
       DeliveryFailedError is raised.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence

from errors import DeliveryFailedError
from infrastructure.delivery.protocol import DeliveryProvider, ProviderError
from infrastructure.delivery.rendering import MessageRenderer
from repositories.code_store import CodeStore
from schemas.dto.otp import DeliveryResult
from schemas.models.otp import Channel, DeliveryStatus, Purpose
from shared.logging import get_logger
from shared.masking import mask_destination

log = get_logger(__name__)


class DeliveryPipeline:
    def __init__(
        self,
        store: CodeStore,
        providers: dict[Channel, Sequence[DeliveryProvider]],
        renderer: Optional[MessageRenderer] = None,
        provider_timeout_seconds: float = 10.0,
    ) -> None:
        self._store = store
        self._providers = {Channel(c): list(chain) for c, chain in providers.items()}
        self._renderer = renderer or MessageRenderer()
        self._timeout = provider_timeout_seconds

    def chain(self, channel: Channel) -> list[DeliveryProvider]:
        return list(self._providers.get(Channel(channel), []))

    async def deliver(
        self,
        subject_id: str,
        purpose: Purpose,
        channel: Channel,
        destination: str,
    ) -> DeliveryResult:
        purpose, channel = Purpose(purpose), Channel(channel)
        masked = mask_destination(destination)

        record = await self._store.issue(subject_id, purpose, channel, destination)
        message = self._renderer.render(purpose, channel, record.code)

        for provider in self.chain(channel):
            try:
                receipt = await asyncio.wait_for(
                    provider.send(destination, message), timeout=self._timeout
                )
            except asyncio.TimeoutError:
                log.warning(
                    "otp_provider_timeout",
                    provider=provider.name,
                    channel=channel.value,
                    destination=masked,
                    timeout=self._timeout,
                )
                continue
            except ProviderError as e:
                log.warning(
                    "otp_provider_failed",
                    provider=provider.name,
                    channel=channel.value,
                    destination=masked,
                    error=str(e),
                    status_code=e.status_code,
                )
                continue
            except Exception as e:
                log.error(
                    "otp_provider_error",
                    provider=provider.name,
                    channel=channel.value,
                    destination=masked,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            await self._store.record_delivery(
                record.id, DeliveryStatus.SENT, receipt.provider, receipt.message_id
            )
            log.info(
                "otp_delivered",
                subject_id=subject_id,
                purpose=purpose.value,
                channel=channel.value,
                provider=receipt.provider,
                destination=masked,
            )
            return DeliveryResult(
                expires_at=record.expires_at,
                provider_used=receipt.provider,
                channel=channel.value,
                code_id=str(record.id),
            )

        await self._store.record_delivery(record.id, DeliveryStatus.FAILED)
        # Only this call's code: a concurrent request may already have
        # superseded it with one that was delivered.
        await self._store.retire(record.id)
        log.error(
            "otp_delivery_failed",
            subject_id=subject_id,
            purpose=purpose.value,
            channel=channel.value,
            destination=masked,
            providers=[p.name for p in self.chain(channel)],
        )
        raise DeliveryFailedError(f"Unable to deliver code via {channel.value}")
