"""Module adapters let business modules drive the dispatch engine without it knowing them."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, Sequence

from .metrics import NOTIFICATION_MODULE_REQUESTS_TOTAL
from .models import Channel
from .schemas import ChannelResult, DispatchResult, ModuleNotifyRequest, SendNotificationRequest
from .services import NotificationService

logger = logging.getLogger(__name__)


class ModuleAdapter(ABC):
    """Describes how one business module's events become notifications."""

    module_name: str

    def map_event_to_template_code(self, event_type: str) -> str:
        return event_type

    @abstractmethod
    def build_variables(self, data: Mapping[str, Any]) -> dict[str, str]:
        """Turn a domain object into template variables."""

    @abstractmethod
    def default_channels(self, event_type: str) -> list[Channel]:
        """Channels to attempt, in order, when the caller names none."""


class ModuleAdapterRegistry:
    """Module name to adapter lookup, built once at startup."""

    def __init__(self, adapters: Iterable[ModuleAdapter] = ()) -> None:
        self._adapters: dict[str, ModuleAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ModuleAdapter) -> None:
        if adapter.module_name in self._adapters:
            logger.info("Replacing notification adapter for module %s", adapter.module_name)
        self._adapters[adapter.module_name] = adapter

    def get_adapter(self, module_name: str) -> ModuleAdapter | None:
        return self._adapters.get(module_name)

    def registered_modules(self) -> list[str]:
        return list(self._adapters)


class ModuleNotifier:
    """Fans a module event out to one ``send_notification`` call per channel."""

    def __init__(self, registry: ModuleAdapterRegistry, service: NotificationService) -> None:
        self.registry = registry
        self.service = service

    async def notify(self, module_name: str, request: ModuleNotifyRequest) -> DispatchResult:
        adapter = self.registry.get_adapter(module_name)
        if adapter is None:
            NOTIFICATION_MODULE_REQUESTS_TOTAL.labels(module="unknown", outcome="unknown_module").inc()
            return DispatchResult(success=False, module=module_name, error=f"Unknown module: {module_name}")

        try:
            code = adapter.map_event_to_template_code(request.event_type)
            variables = adapter.build_variables(request.data)
            channels: Sequence[Channel] = request.channels or adapter.default_channels(request.event_type)
        except (KeyError, TypeError, ValueError) as exc:
            logger.info("Module %s could not build %s notification: %s", module_name, request.event_type, exc)
            NOTIFICATION_MODULE_REQUESTS_TOTAL.labels(module=module_name, outcome="invalid_payload").inc()
            return DispatchResult(success=False, module=module_name, error=f"Invalid {module_name} payload: {exc}")

        results: list[ChannelResult] = []
        for channel in channels:
            outcome = await self.service.send_notification(
                SendNotificationRequest(
                    tenantId=request.tenant_id,
                    channel=channel,
                    eventType=request.event_type,
                    recipient=request.recipient,
                    variables=variables,
                    referenceId=request.reference_id,
                    referenceType=request.reference_type,
                    userId=request.user_id,
                    language=request.language,
                    templateCode=code,
                )
            )
            results.append(
                ChannelResult(
                    channel=channel,
                    success=outcome.success,
                    logId=outcome.log_id,
                    messageId=outcome.message_id,
                    error=outcome.error,
                )
            )

        success = any(result.success for result in results)
        NOTIFICATION_MODULE_REQUESTS_TOTAL.labels(
            module=module_name,
            outcome="delivered" if success else "failed",
        ).inc()
        return DispatchResult(
            success=success,
            module=module_name,
            templateCode=code,
            channelResults=results,
            error=None if success else "No channel delivered the notification",
        )
