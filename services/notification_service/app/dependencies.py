"""Dependency helpers for the dispatch service."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import ServiceSettings, lifespan_session

from .providers import DeliveryRegistry
from .registry import ModuleAdapterRegistry, ModuleNotifier
from .repository import NotificationRepository
from .scheduler import RetryScheduler
from .services import NotificationService, build_notification_service


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_repository(session: AsyncSession = Depends(get_session)) -> NotificationRepository:
    return NotificationRepository(session)


def get_settings(request: Request) -> ServiceSettings:
    return request.app.state.settings


def get_delivery_registry(request: Request) -> DeliveryRegistry:
    return request.app.state.delivery_registry


def get_module_registry(request: Request) -> ModuleAdapterRegistry:
    return request.app.state.module_registry


def get_retry_scheduler(request: Request) -> RetryScheduler:
    return request.app.state.retry_scheduler


def get_event_publisher(request: Request) -> Any:
    return getattr(request.app.state, "event_publisher", None)


def get_notification_service(
    session: AsyncSession = Depends(get_session),
    delivery: DeliveryRegistry = Depends(get_delivery_registry),
    settings: ServiceSettings = Depends(get_settings),
    event_publisher: Any = Depends(get_event_publisher),
) -> NotificationService:
    return build_notification_service(session, delivery, settings, event_publisher=event_publisher)


def get_module_notifier(
    modules: ModuleAdapterRegistry = Depends(get_module_registry),
    service: NotificationService = Depends(get_notification_service),
) -> ModuleNotifier:
    return ModuleNotifier(modules, service)
