"""DeliveryProvider protocol. The pipeline depends on this, not on concrete gateways."""

from dataclasses import dataclass
from typing import Optional, Protocol

from schemas.models.otp import Channel


@dataclass(frozen=True)
class OtpMessage:
    subject: str
    text: str
    html: Optional[str] = None


@dataclass(frozen=True)
class SendReceipt:
    provider: str
    message_id: Optional[str] = None


class ProviderError(Exception):
    """A single provider failed to hand off the message."""

    def __init__(self, provider: str, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class DeliveryProvider(Protocol):
    name: str
    channel: Channel

    async def send(self, destination: str, message: OtpMessage) -> SendReceipt: ...
