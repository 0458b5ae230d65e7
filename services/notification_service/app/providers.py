"""Delivery adapters translating a rendered message into a provider API call."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from time import perf_counter, time
from typing import Any, Iterable, Mapping, Protocol

import httpx
from pydantic import TypeAdapter, ValidationError

from services.common import ServiceSettings
from services.common.tracing import get_tracer

from .metrics import NOTIFICATION_PROVIDER_LATENCY_SECONDS
from .models import Channel, ChannelSettings
from .schemas import ProviderConfig, ResendConfig, SendGridConfig, TwilioConfig

logger = logging.getLogger(__name__)
_TRACER = get_tracer(__name__)

_PROVIDER_CONFIG: TypeAdapter[ProviderConfig] = TypeAdapter(ProviderConfig)

CHANNEL_PROVIDERS: Mapping[str, frozenset[str]] = {
    Channel.EMAIL: frozenset({"sendgrid", "resend"}),
    Channel.WHATSAPP: frozenset({"twilio"}),
    Channel.SMS: frozenset({"twilio"}),
}
DEFAULT_PROVIDERS: Mapping[str, str] = {
    Channel.EMAIL: "sendgrid",
    Channel.WHATSAPP: "twilio",
    Channel.SMS: "twilio",
}


class NotificationConfigurationError(Exception):
    """A send that needs an administrator, not a retry."""


class ChannelConfigurationError(NotificationConfigurationError):
    """Channel disabled, missing, or configured with unusable credentials."""


class ChannelDisabledError(ChannelConfigurationError):
    """The tenant has no settings for the channel or switched it off."""


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    success: bool
    message_id: str | None = None
    error: str | None = None

    @classmethod
    def sent(cls, message_id: str) -> DeliveryResult:
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, error: str) -> DeliveryResult:
        return cls(success=False, error=error)


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    channel: str
    to: str
    subject: str
    body: str
    recipient_name: str = ""


def parse_provider_config(channel: str, provider_name: str | None, config: Mapping[str, Any]) -> ProviderConfig:
    """Validate raw credentials into the typed config for the selected provider."""

    name = (provider_name or config.get("provider") or DEFAULT_PROVIDERS.get(channel) or "").strip().lower()
    if name not in CHANNEL_PROVIDERS.get(channel, frozenset()):
        raise ChannelConfigurationError(f"Unknown {channel} provider: {name or 'none'}")
    try:
        return _PROVIDER_CONFIG.validate_python({**config, "provider": name})
    except ValidationError as exc:
        missing = sorted({str(error["loc"][-1]) for error in exc.errors() if error.get("loc")})
        detail = ", ".join(missing) or "invalid credentials"
        raise ChannelConfigurationError(f"{channel} provider {name} is not configured ({detail})") from exc


def load_channel_config(settings: ChannelSettings | None, channel: str) -> ProviderConfig:
    """Return the provider config for an enabled channel or raise ``ChannelConfigurationError``."""

    if settings is None or not settings.is_enabled:
        raise ChannelDisabledError(f"{channel} notifications not enabled for this tenant")
    try:
        raw = json.loads(settings.config_json) if settings.config_json else {}
    except json.JSONDecodeError as exc:
        raise ChannelConfigurationError(f"{channel} provider config is not valid JSON") from exc
    if not isinstance(raw, dict):
        raise ChannelConfigurationError(f"{channel} provider config must be an object")
    return parse_provider_config(channel, settings.provider_name, raw)


def _synthetic_id(prefix: str) -> str:
    return f"{prefix}-{int(time() * 1000)}"


class MessageProvider(Protocol):
    name: str
    label: str

    async def deliver(self, config: Any, message: OutboundMessage) -> DeliveryResult: ...


class SendGridEmailProvider:
    name = "sendgrid"
    label = "SendGrid"

    def __init__(self, client: httpx.AsyncClient, *, url: str) -> None:
        self._client = client
        self._url = url

    async def deliver(self, config: SendGridConfig, message: OutboundMessage) -> DeliveryResult:
        response = await self._client.post(
            self._url,
            headers={"Authorization": f"Bearer {config.api_key}"},
            json={
                "personalizations": [{"to": [{"email": message.to, "name": message.recipient_name}]}],
                "from": {"email": config.from_email, "name": config.from_name},
                "subject": message.subject,
                "content": [{"type": "text/plain", "value": message.body}],
            },
        )
        if response.is_success:
            return DeliveryResult.sent(response.headers.get("x-message-id") or _synthetic_id("sg"))
        return DeliveryResult.failed(f"SendGrid error: {response.status_code} - {response.text}")


class ResendEmailProvider:
    name = "resend"
    label = "Resend"

    def __init__(self, client: httpx.AsyncClient, *, url: str) -> None:
        self._client = client
        self._url = url

    async def deliver(self, config: ResendConfig, message: OutboundMessage) -> DeliveryResult:
        response = await self._client.post(
            self._url,
            headers={"Authorization": f"Bearer {config.api_key}"},
            json={
                "from": config.from_email,
                "to": [message.to],
                "subject": message.subject,
                "text": message.body,
            },
        )
        if response.is_success:
            data = response.json()
            return DeliveryResult.sent(data.get("id") or _synthetic_id("re"))
        return DeliveryResult.failed(f"Resend error: {response.status_code} - {response.text}")


def _e164(number: str) -> str:
    cleaned = number.strip().removeprefix("whatsapp:").replace(" ", "").replace("-", "")
    return cleaned if cleaned.startswith("+") else f"+{cleaned}"


class TwilioMessagingProvider:
    """Twilio Messages API; WhatsApp addresses carry the ``whatsapp:`` prefix."""

    name = "twilio"
    label = "Twilio"

    def __init__(self, client: httpx.AsyncClient, *, base_url: str) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    def addresses(self, config: TwilioConfig, message: OutboundMessage) -> tuple[str, str]:
        to = _e164(message.to)
        if message.channel == Channel.WHATSAPP:
            sender = config.from_number if config.from_number.startswith("whatsapp:") else f"whatsapp:{config.from_number}"
            return sender, f"whatsapp:{to}"
        return config.from_number.removeprefix("whatsapp:"), to

    async def deliver(self, config: TwilioConfig, message: OutboundMessage) -> DeliveryResult:
        sender, to = self.addresses(config, message)
        response = await self._client.post(
            f"{self._base_url}/Accounts/{config.account_sid}/Messages.json",
            auth=(config.account_sid, config.auth_token),
            data={"From": sender, "To": to, "Body": message.body},
        )
        if response.is_success:
            data = response.json()
            return DeliveryResult.sent(data.get("sid") or _synthetic_id("tw"))
        try:
            detail = response.json().get("message")
        except ValueError:
            detail = None
        return DeliveryResult.failed(f"Twilio error: {detail or response.status_code}")


class DeliveryAdapter(Protocol):
    channel: str

    async def send(
        self,
        config: ProviderConfig,
        *,
        recipient: str,
        subject: str | None,
        body: str,
        recipient_name: str = "",
    ) -> DeliveryResult: ...


class ProviderRoutedAdapter:
    """Picks the provider named by the channel config and normalises every outcome.

    Transport errors, timeouts and malformed provider responses come back as
    failed ``DeliveryResult`` values so callers can route them into the retry
    path; this method does not raise for provider problems.
    """

    channel: str

    def __init__(self, providers: Iterable[MessageProvider]) -> None:
        self._providers = {provider.name: provider for provider in providers}

    @property
    def provider_names(self) -> list[str]:
        return sorted(self._providers)

    async def send(
        self,
        config: ProviderConfig,
        *,
        recipient: str,
        subject: str | None,
        body: str,
        recipient_name: str = "",
    ) -> DeliveryResult:
        provider = self._providers.get(config.provider)
        if provider is None:
            return DeliveryResult.failed(f"Unknown {self.channel} provider: {config.provider}")

        message = OutboundMessage(
            channel=self.channel,
            to=recipient,
            subject=subject or "",
            body=body,
            recipient_name=recipient_name,
        )
        start = perf_counter()
        with _TRACER.start_as_current_span("notification.provider.send") as span:
            span.set_attribute("notification.channel", self.channel)
            span.set_attribute("notification.provider", provider.name)
            try:
                result = await provider.deliver(config, message)
            except httpx.TimeoutException:
                result = DeliveryResult.failed(f"{provider.label} request timed out")
            except httpx.HTTPError as exc:
                result = DeliveryResult.failed(f"{provider.label} request failed: {exc}")
            except ValueError as exc:
                result = DeliveryResult.failed(f"{provider.label} returned an unreadable response: {exc}")
            span.set_attribute("notification.delivered", result.success)
        NOTIFICATION_PROVIDER_LATENCY_SECONDS.labels(channel=self.channel, provider=provider.name).observe(
            perf_counter() - start
        )
        if not result.success:
            logger.warning("%s delivery via %s failed: %s", self.channel, provider.name, result.error)
        return result


class EmailDeliveryAdapter(ProviderRoutedAdapter):
    channel = Channel.EMAIL.value


class MessagingDeliveryAdapter(ProviderRoutedAdapter):
    """WhatsApp or SMS delivery; the channel decides the address prefixes."""

    def __init__(self, channel: str, providers: Iterable[MessageProvider]) -> None:
        super().__init__(providers)
        self.channel = channel


class DeliveryRegistry:
    """Channel name to delivery adapter lookup."""

    def __init__(self, adapters: Iterable[DeliveryAdapter] = ()) -> None:
        self._adapters: dict[str, DeliveryAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: DeliveryAdapter) -> None:
        self._adapters[str(adapter.channel)] = adapter

    def get(self, channel: str) -> DeliveryAdapter | None:
        return self._adapters.get(str(channel))

    @property
    def channels(self) -> list[str]:
        return sorted(self._adapters)


def build_delivery_registry(client: httpx.AsyncClient, settings: ServiceSettings) -> DeliveryRegistry:
    twilio = TwilioMessagingProvider(client, base_url=settings.twilio_api_base_url)
    return DeliveryRegistry(
        [
            EmailDeliveryAdapter(
                [
                    SendGridEmailProvider(client, url=settings.sendgrid_api_url),
                    ResendEmailProvider(client, url=settings.resend_api_url),
                ]
            ),
            MessagingDeliveryAdapter(Channel.WHATSAPP.value, [twilio]),
            MessagingDeliveryAdapter(Channel.SMS.value, [twilio]),
        ]
    )
