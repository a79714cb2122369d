"""Twilio SMS provider over the shared HttpClient."""

import httpx

from config import SmsSettings
from infrastructure.delivery.protocol import OtpMessage, ProviderError, SendReceipt
from infrastructure.http_client import HttpClient
from schemas.models.otp import Channel

_TWILIO_API_BASE = "https://api.twilio.com/2010-04-01/Accounts"


class TwilioSmsProvider:
    name = "twilio"
    channel = Channel.SMS

    def __init__(self, settings: SmsSettings, http_client: HttpClient) -> None:
        self._settings = settings
        self._http = http_client

    @property
    def configured(self) -> bool:
        s = self._settings
        return bool(s.twilio_account_sid and s.twilio_auth_token and s.twilio_from_number)

    async def send(self, destination: str, message: OtpMessage) -> SendReceipt:
        if not self.configured:
            raise ProviderError(self.name, "credentials not configured")

        sid = self._settings.twilio_account_sid
        try:
            response = await self._http.post(
                f"{_TWILIO_API_BASE}/{sid}/Messages.json",
                data={
                    "To": destination,
                    "From": self._settings.twilio_from_number,
                    "Body": message.text,
                },
                auth=(sid, self._settings.twilio_auth_token),
            )
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"transport error: {type(e).__name__}") from e

        if response.status_code != 201:
            detail = _error_message(response)
            raise ProviderError(self.name, detail, status_code=response.status_code)

        return SendReceipt(provider=self.name, message_id=response.json().get("sid"))


def _error_message(response: httpx.Response) -> str:
    try:
        return str(response.json().get("message", response.status_code))
    except ValueError:
        return f"HTTP {response.status_code}"
