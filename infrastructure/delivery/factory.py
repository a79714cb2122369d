"""Assembles the ordered provider chain for each channel from settings."""

from typing import Callable

from config import AppSettings
from infrastructure.delivery.brevo import BrevoEmailProvider
from infrastructure.delivery.log_only import LogOnlyProvider
from infrastructure.delivery.protocol import DeliveryProvider
from infrastructure.delivery.twilio import TwilioSmsProvider
from infrastructure.delivery.vonage import VonageSmsProvider
from infrastructure.delivery.zeptomail import ZeptoMailProvider
from infrastructure.http_client import HttpClient
from schemas.models.otp import Channel
from shared.logging import get_logger

log = get_logger(__name__)

ProviderChains = dict[Channel, list[DeliveryProvider]]


def build_providers(settings: AppSettings, http_client: HttpClient) -> ProviderChains:
    """Return ``{channel: [provider, ...]}`` in the configured order.

    Providers without credentials are skipped. The log-only provider is
    refused in production so a misconfiguration cannot leak codes to logs.
    """
    factories: dict[Channel, dict[str, Callable[[], DeliveryProvider]]] = {
        Channel.SMS: {
            "twilio": lambda: TwilioSmsProvider(settings.sms, http_client),
            "vonage": lambda: VonageSmsProvider(settings.sms, http_client),
            "log": lambda: LogOnlyProvider(Channel.SMS),
        },
        Channel.EMAIL: {
            "zeptomail": lambda: ZeptoMailProvider(settings.email, http_client),
            "brevo": lambda: BrevoEmailProvider(settings.email, http_client),
            "log": lambda: LogOnlyProvider(Channel.EMAIL),
        },
    }
    orders = {
        Channel.SMS: settings.sms.sms_provider_order,
        Channel.EMAIL: settings.email.email_provider_order,
    }

    chains: ProviderChains = {}
    for channel, order in orders.items():
        chain: list[DeliveryProvider] = []
        for name in order:
            factory = factories[channel].get(name)
            if factory is None:
                log.warning("delivery_provider_unknown", channel=channel.value, provider=name)
                continue
            if name == "log" and settings.is_production:
                log.warning("delivery_provider_refused", channel=channel.value, provider=name)
                continue
            provider = factory()
            if not getattr(provider, "configured", True):
                log.info("delivery_provider_skipped", channel=channel.value, provider=name)
                continue
            chain.append(provider)
        chains[channel] = chain
        log.info(
            "delivery_chain_built",
            channel=channel.value,
            providers=[p.name for p in chain],
        )
    return chains
