"""ZeptoMail email provider, the primary email route."""

import httpx

from config import EmailSettings
from infrastructure.delivery.protocol import OtpMessage, ProviderError, SendReceipt
from infrastructure.http_client import HttpClient
from schemas.models.otp import Channel

_ZEPTO_API_URL = "https://api.zeptomail.in/v1.1/email"


class ZeptoMailProvider:
    name = "zeptomail"
    channel = Channel.EMAIL

    def __init__(self, settings: EmailSettings, http_client: HttpClient) -> None:
        self._settings = settings
        self._http = http_client

    @property
    def configured(self) -> bool:
        return bool(self._settings.zepto_api_token)

    def _auth_header(self) -> str:
        token = self._settings.zepto_api_token
        if not token.startswith("Zoho-enczapikey "):
            token = f"Zoho-enczapikey {token}"
        return token

    async def send(self, destination: str, message: OtpMessage) -> SendReceipt:
        if not self.configured:
            raise ProviderError(self.name, "token not configured")

        payload: dict = {
            "from": {
                "address": self._settings.zepto_from_email,
                "name": self._settings.zepto_from_name,
            },
            "to": [{"email_address": {"address": destination, "name": destination}}],
            "subject": message.subject,
            "textbody": message.text,
        }
        if message.html:
            payload["htmlbody"] = message.html

        headers = {"Authorization": self._auth_header(), "Content-Type": "application/json"}
        try:
            response = await self._http.post(_ZEPTO_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"transport error: {type(e).__name__}") from e

        if response.status_code not in (200, 201, 202):
            raise ProviderError(
                self.name, response.text[:200], status_code=response.status_code
            )

        try:
            message_id = response.json().get("request_id")
        except ValueError:
            message_id = None
        return SendReceipt(provider=self.name, message_id=message_id)
