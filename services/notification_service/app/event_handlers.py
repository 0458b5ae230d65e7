"""Background handler for notification requests arriving on the event bus."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import ServiceSettings, lifespan_session

from .events import NotificationEventPublisher
from .metrics import NOTIFICATION_MODULE_REQUESTS_TOTAL
from .providers import DeliveryRegistry
from .registry import ModuleAdapterRegistry, ModuleNotifier
from .schemas import DispatchResult, ModuleNotifyRequest
from .services import build_notification_service

logger = logging.getLogger(__name__)

TOPIC_REQUESTED = "notification.requested.v1"


class ModuleEventHandler:
    """Routes ``notification.requested.v1`` messages to the owning module adapter."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        modules: ModuleAdapterRegistry,
        delivery: DeliveryRegistry,
        settings: ServiceSettings,
        event_publisher: NotificationEventPublisher | None,
    ) -> None:
        self._session_factory = session_factory
        self._modules = modules
        self._delivery = delivery
        self._settings = settings
        self._event_publisher = event_publisher

    async def handle(self, topic: str, payload: dict[str, Any]) -> DispatchResult | None:
        if topic != TOPIC_REQUESTED:
            return None

        module_name = payload.get("module")
        if not isinstance(module_name, str) or self._modules.get_adapter(module_name) is None:
            NOTIFICATION_MODULE_REQUESTS_TOTAL.labels(module="unknown", outcome="unknown_module").inc()
            logger.info("Dropping notification request for unknown module %r", module_name)
            return None

        try:
            request = ModuleNotifyRequest.model_validate(payload)
        except ValidationError as exc:
            NOTIFICATION_MODULE_REQUESTS_TOTAL.labels(module=module_name, outcome="invalid_payload").inc()
            logger.info("Dropping malformed %s notification request: %s", module_name, exc.errors())
            return None

        async with lifespan_session(self._session_factory) as session:
            service = build_notification_service(
                session, self._delivery, self._settings, event_publisher=self._event_publisher
            )
            return await ModuleNotifier(self._modules, service).notify(module_name, request)
