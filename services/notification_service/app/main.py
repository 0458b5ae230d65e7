from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from services.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    configure_logging,
    create_schema,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
)
from services.common.kafka import KafkaConsumerStub, KafkaProducerStub

from .api.health import router as health_router
from .api.notifications import router as notifications_router
from .billing import InvoiceNotificationAdapter
from .event_handlers import TOPIC_REQUESTED, ModuleEventHandler
from .events import NotificationEventPublisher
from .models import Base
from .providers import build_delivery_registry
from .registry import ModuleAdapterRegistry
from .scheduler import RetryScheduler

SERVICE_NAME = "Notification Dispatch Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./notification_dispatch.db"


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create the notification dispatch FastAPI application."""

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)
    module_registry = ModuleAdapterRegistry([InvoiceNotificationAdapter()])

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client: httpx.AsyncClient | None = None
        kafka_producer: KafkaProducerStub | None = None
        event_consumer: KafkaConsumerStub | None = None
        retry_scheduler: RetryScheduler | None = None
        app.state.session_factory = session_factory
        app.state.module_registry = module_registry
        try:
            await create_schema(database_url, Base.metadata)
            http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(resolved_settings.notification_provider_timeout_seconds)
            )
            delivery_registry = build_delivery_registry(http_client, resolved_settings)
            kafka_producer = KafkaProducerStub(bootstrap_servers=resolved_settings.kafka_bootstrap_servers)
            await kafka_producer.connect()
            event_publisher = NotificationEventPublisher(kafka_producer)
            retry_scheduler = RetryScheduler(
                session_factory,
                delivery_registry,
                resolved_settings,
                event_publisher=event_publisher,
            )
            event_handler = ModuleEventHandler(
                session_factory,
                modules=module_registry,
                delivery=delivery_registry,
                settings=resolved_settings,
                event_publisher=event_publisher,
            )
            event_consumer = KafkaConsumerStub([TOPIC_REQUESTED], event_handler.handle)
            await event_consumer.start()
            app.state.delivery_registry = delivery_registry
            app.state.event_publisher = event_publisher
            app.state.kafka_producer = kafka_producer
            app.state.retry_scheduler = retry_scheduler
            app.state.notification_event_consumer = event_consumer
            if resolved_settings.notification_retry_worker_enabled:
                await retry_scheduler.start()
            yield
        finally:
            if retry_scheduler is not None:
                await retry_scheduler.stop()
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.module_registry = None
            app.state.delivery_registry = None
            app.state.event_publisher = None
            app.state.kafka_producer = None
            app.state.retry_scheduler = None
            app.state.notification_event_consumer = None
            if event_consumer is not None:
                await event_consumer.stop()
            if kafka_producer is not None:
                await kafka_producer.close()
            if http_client is not None:
                await http_client.aclose()
            await dispose_engines()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(notifications_router)
    return app


app = create_app()
