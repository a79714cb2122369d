"""Vonage (Nexmo) SMS provider, used as the secondary SMS route."""

import httpx

from config import SmsSettings
from infrastructure.delivery.protocol import OtpMessage, ProviderError, SendReceipt
from infrastructure.http_client import HttpClient
from schemas.models.otp import Channel

_VONAGE_SMS_URL = "https://rest.nexmo.com/sms/json"


class VonageSmsProvider:
    name = "vonage"
    channel = Channel.SMS

    def __init__(self, settings: SmsSettings, http_client: HttpClient) -> None:
        self._settings = settings
        self._http = http_client

    @property
    def configured(self) -> bool:
        return bool(self._settings.vonage_api_key and self._settings.vonage_api_secret)

    async def send(self, destination: str, message: OtpMessage) -> SendReceipt:
        if not self.configured:
            raise ProviderError(self.name, "credentials not configured")

        payload = {
            "api_key": self._settings.vonage_api_key,
            "api_secret": self._settings.vonage_api_secret,
            # Vonage wants bare digits
            "to": destination.lstrip("+"),
            "from": self._settings.vonage_from,
            "text": message.text,
        }
        try:
            response = await self._http.post(_VONAGE_SMS_URL, data=payload)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(self.name, f"transport error: {type(e).__name__}") from e

        messages = data.get("messages") or [{}]
        first = messages[0]
        # Vonage reports per-message status; "0" is the only success code
        if first.get("status") != "0":
            raise ProviderError(
                self.name,
                first.get("error-text", "unknown error"),
                status_code=response.status_code,
            )
        return SendReceipt(provider=self.name, message_id=first.get("message-id"))
