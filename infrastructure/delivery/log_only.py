"""Log-only provider for local development.

Writes the message to the application log instead of sending it. Never
registered in production; build_providers() refuses it there.
"""

import uuid

from infrastructure.delivery.protocol import OtpMessage, SendReceipt
from schemas.models.otp import Channel
from shared.logging import get_logger
from shared.masking import mask_destination

log = get_logger(__name__)


class LogOnlyProvider:
    name = "log"
    configured = True

    def __init__(self, channel: Channel) -> None:
        self.channel = channel

    async def send(self, destination: str, message: OtpMessage) -> SendReceipt:
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        log.warning(
            "otp_delivered_to_log",
            channel=self.channel.value,
            destination=mask_destination(destination),
            subject=message.subject,
            text=message.text,
            message_id=message_id,
        )
        return SendReceipt(provider=self.name, message_id=message_id)
