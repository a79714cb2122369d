"""Brevo (ex-Sendinblue) transactional email provider, the secondary email route."""

import httpx

from config import EmailSettings
from infrastructure.delivery.protocol import OtpMessage, ProviderError, SendReceipt
from infrastructure.http_client import HttpClient
from schemas.models.otp import Channel

_BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"


class BrevoEmailProvider:
    name = "brevo"
    channel = Channel.EMAIL

    def __init__(self, settings: EmailSettings, http_client: HttpClient) -> None:
        self._settings = settings
        self._http = http_client

    @property
    def configured(self) -> bool:
        return bool(self._settings.brevo_api_key)

    async def send(self, destination: str, message: OtpMessage) -> SendReceipt:
        if not self.configured:
            raise ProviderError(self.name, "api key not configured")

        payload: dict = {
            "sender": {
                "name": self._settings.brevo_from_name,
                "email": self._settings.brevo_from_email,
            },
            "to": [{"email": destination}],
            "subject": message.subject,
            "textContent": message.text,
        }
        if message.html:
            payload["htmlContent"] = message.html

        headers = {"api-key": self._settings.brevo_api_key, "Content-Type": "application/json"}
        try:
            response = await self._http.post(_BREVO_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"transport error: {type(e).__name__}") from e

        if response.status_code != 201:
            raise ProviderError(
                self.name, response.text[:200], status_code=response.status_code
            )
        return SendReceipt(provider=self.name, message_id=response.json().get("messageId"))
