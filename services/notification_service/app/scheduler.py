"""Periodic retry sweep over the notification ledger."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import ServiceSettings, lifespan_session

from .events import NotificationEventPublisher
from .providers import DeliveryRegistry
from .services import NotificationService, build_notification_service

logger = logging.getLogger(__name__)


class RetryScheduler:
    """Claims due ledger entries and re-sends them with bounded concurrency.

    Claims are committed in their own unit of work before any provider call.
    Each claimed entry is then re-sent in a separate session.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        delivery: DeliveryRegistry,
        settings: ServiceSettings,
        *,
        event_publisher: NotificationEventPublisher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._delivery = delivery
        self._settings = settings
        self._event_publisher = event_publisher
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _service(self, session: AsyncSession) -> NotificationService:
        return build_notification_service(
            session, self._delivery, self._settings, event_publisher=self._event_publisher
        )

    async def process_retries(self) -> int:
        """Run one sweep and return how many entries were re-attempted."""

        async with lifespan_session(self._session_factory) as session:
            claimed = await self._service(session).claim_due_retries(
                limit=self._settings.notification_retry_batch_size,
                claim_timeout=timedelta(seconds=self._settings.notification_claim_timeout_seconds),
            )
        if not claimed:
            return 0

        semaphore = asyncio.Semaphore(max(1, self._settings.notification_retry_concurrency))

        async def _retry(log_id: str) -> bool:
            async with semaphore:
                try:
                    async with lifespan_session(self._session_factory) as session:
                        return await self._service(session).retry_delivery(log_id)
                except Exception:
                    # The claim stays in place and is released once it goes stale.
                    logger.exception("Retry of notification %s aborted", log_id)
                    return False

        results = await asyncio.gather(*(_retry(log_id) for log_id in claimed))
        processed = sum(1 for result in results if result)
        logger.info("Retry sweep claimed %d entries, re-attempted %d", len(claimed), processed)
        return processed

    async def _run(self) -> None:
        interval = self._settings.notification_retry_interval_seconds
        while True:
            try:
                await self.process_retries()
            except Exception:
                logger.exception("Retry sweep failed")
            await asyncio.sleep(interval)

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="notification-retry-scheduler")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
