"""Dispatch orchestration: validate, render, record, deliver, retry."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.config import ServiceSettings
from services.common.logging import bind_tenant
from services.common.tracing import get_tracer

from .events import NotificationEventPublisher
from .metrics import (
    NOTIFICATION_CLAIM_CONFLICTS_TOTAL,
    NOTIFICATION_FAILURE_TOTAL,
    NOTIFICATION_REJECTED_TOTAL,
    NOTIFICATION_RETRIES_PROCESSED_TOTAL,
    NOTIFICATION_RETRIES_SKIPPED_TOTAL,
    NOTIFICATION_RETRY_SCHEDULED_TOTAL,
    NOTIFICATION_SENT_TOTAL,
    NOTIFICATION_TEMPLATE_FALLBACK_TOTAL,
    normalise_rejection_reason,
)
from .models import Channel, LogStatus, NotificationLog
from .providers import (
    ChannelConfigurationError,
    ChannelDisabledError,
    DeliveryAdapter,
    DeliveryRegistry,
    DeliveryResult,
    NotificationConfigurationError,
    load_channel_config,
)
from .repository import NotificationRepository
from .schemas import NotificationResult, ProviderConfig, SendNotificationRequest
from .templates import FALLBACK_LANGUAGE, TemplateResolver

logger = logging.getLogger(__name__)
_TRACER = get_tracer(__name__)

DEFAULT_TENANT_NAME = "Our Business"


class MissingRecipientError(NotificationConfigurationError):
    """The recipient has no address for the requested channel."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff: ``2**retry_count * base_minutes`` (10m, 20m, 40m with the defaults)."""

    max_retries: int = 3
    base_minutes: int = 5

    def backoff(self, retry_count: int) -> timedelta:
        return timedelta(minutes=(2**retry_count) * self.base_minutes)


class NotificationService:
    """Coordinates a single notification from request to ledger to provider."""

    def __init__(
        self,
        repository: NotificationRepository,
        delivery: DeliveryRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        event_publisher: NotificationEventPublisher | None = None,
        default_language: str = FALLBACK_LANGUAGE,
        default_tenant_name: str = DEFAULT_TENANT_NAME,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.delivery = delivery
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_publisher = event_publisher
        self.resolver = TemplateResolver(repository)
        self.default_language = default_language
        self.default_tenant_name = default_tenant_name
        self._clock = clock

    async def send_notification(self, request: SendNotificationRequest) -> NotificationResult:
        """Send one notification on one channel. Failures come back as values, never exceptions."""

        channel = str(request.channel)
        with bind_tenant(request.tenant_id), _TRACER.start_as_current_span("notification.dispatch") as span:
            span.set_attribute("notification.channel", channel)
            span.set_attribute("notification.event_type", request.event_type)
            try:
                result = await self._send(request, channel)
            except NotificationConfigurationError as exc:
                result = self._reject(channel, self._rejection_reason(exc), str(exc))
            except SQLAlchemyError:
                logger.exception("Notification ledger unavailable for %s/%s", channel, request.event_type)
                result = self._reject(channel, "storage_error", "Notification ledger unavailable")
            span.set_attribute("notification.success", result.success)
            return result

    async def send_batch(self, requests: Sequence[SendNotificationRequest]) -> list[NotificationResult]:
        """Send each request in order; one result per request, failures included."""

        return [await self.send_notification(request) for request in requests]

    async def _send(self, request: SendNotificationRequest, channel: str) -> NotificationResult:
        settings = await self.repository.get_channel_settings(request.tenant_id, channel)
        config = load_channel_config(settings, channel)
        adapter = self.delivery.get(channel)
        if adapter is None:
            raise ChannelConfigurationError(f"No delivery adapter registered for {channel}")

        tenant_name = await self.repository.get_tenant_name(request.tenant_id) or self.default_tenant_name
        variables: dict[str, Any] = {**request.variables, "tenantName": tenant_name}

        code = request.template_code or request.event_type
        rendered = await self.resolver.render(
            tenant_id=request.tenant_id,
            code=code,
            channel=channel,
            language=request.language or self.default_language,
            variables=variables,
        )
        if rendered.from_default:
            NOTIFICATION_TEMPLATE_FALLBACK_TOTAL.labels(channel=channel).inc()

        address = request.recipient.address_for(channel)
        if not address:
            kind = "email" if channel == Channel.EMAIL else "phone"
            raise MissingRecipientError(f"No {kind} address for recipient")

        log = await self.repository.create_log(
            tenant_id=request.tenant_id,
            template_id=rendered.template_id,
            channel=channel,
            event_type=request.event_type,
            recipient=address,
            recipient_name=request.recipient.name or None,
            subject=rendered.subject,
            body=rendered.body,
            max_retries=self.retry_policy.max_retries,
            reference_id=request.reference_id,
            reference_type=request.reference_type,
            user_id=request.user_id,
            metadata_json=json.dumps(
                {"recipientName": request.recipient.name, "templateCode": code, "variables": variables},
                separators=(",", ":"),
                ensure_ascii=False,
                default=str,
            ),
        )
        await self.repository.add_event(log.id, event_type="created", payload=code)
        # The pending entry is durable before the provider is called.
        await self.repository.commit()

        outcome = await self._deliver(adapter, config, log)
        if outcome.success and outcome.message_id:
            await self._record_success(log, outcome.message_id)
            await self.repository.commit()
            return NotificationResult(success=True, logId=log.id, messageId=outcome.message_id)

        error = outcome.error or "Unknown error"
        await self.handle_failure(log, error)
        await self.repository.commit()
        return NotificationResult(success=False, logId=log.id, error=error)

    def _rejection_reason(self, exc: NotificationConfigurationError) -> str:
        if isinstance(exc, MissingRecipientError):
            return "no_recipient"
        if isinstance(exc, ChannelDisabledError):
            return "channel_disabled"
        return "invalid_config"

    def _reject(self, channel: str, reason: str, error: str) -> NotificationResult:
        logger.info("Notification on %s rejected (%s): %s", channel, reason, error)
        NOTIFICATION_REJECTED_TOTAL.labels(channel=channel, reason=normalise_rejection_reason(reason)).inc()
        return NotificationResult(success=False, logId="", error=error)

    async def _deliver(
        self,
        adapter: DeliveryAdapter,
        config: ProviderConfig,
        log: NotificationLog,
    ) -> DeliveryResult:
        try:
            return await adapter.send(
                config,
                recipient=log.recipient,
                subject=log.subject,
                body=log.body,
                recipient_name=log.recipient_name or "",
            )
        except Exception as exc:
            # Adapters normalise provider errors; anything else still has to land in the ledger.
            logger.exception("Delivery adapter for %s raised", log.channel)
            return DeliveryResult.failed(str(exc) or exc.__class__.__name__)

    async def _record_success(self, log: NotificationLog, message_id: str) -> None:
        if not await self.repository.mark_sent(log.id, message_id=message_id, sent_at=self._clock()):
            logger.warning(
                "Ledger entry %s left in-flight state before it could be marked sent (message %s)", log.id, message_id
            )
            await self.repository.add_event(log.id, event_type="delivered_after_release", payload=message_id)
            return
        await self.repository.add_event(log.id, event_type="sent", payload=message_id)
        NOTIFICATION_SENT_TOTAL.labels(channel=log.channel).inc()
        if self.event_publisher is not None:
            await self.event_publisher.notification_sent(log, message_id=message_id)

    async def handle_failure(self, log: NotificationLog, error_message: str) -> None:
        """Count the failed attempt and either schedule a retry or fail the entry for good."""

        retry_count = log.retry_count + 1
        now = self._clock()
        if retry_count < log.max_retries:
            next_retry_at = now + self.retry_policy.backoff(retry_count)
            if not await self.repository.schedule_retry(
                log.id,
                retry_count=retry_count,
                next_retry_at=next_retry_at,
                error_message=error_message,
            ):
                return
            await self.repository.add_event(log.id, event_type="retry_scheduled", payload=error_message)
            NOTIFICATION_RETRY_SCHEDULED_TOTAL.labels(channel=log.channel).inc()
            logger.info(
                "Notification %s attempt %d failed; retrying at %s",
                log.id,
                retry_count,
                next_retry_at.isoformat(),
            )
            if self.event_publisher is not None:
                await self.event_publisher.notification_retry_scheduled(
                    log,
                    retry_count=retry_count,
                    next_retry_at=next_retry_at,
                    reason=error_message,
                )
            return

        if not await self.repository.mark_failed(
            log.id,
            retry_count=retry_count,
            error_message=error_message,
            failed_at=now,
        ):
            return
        await self.repository.add_event(log.id, event_type="failed", payload=error_message)
        NOTIFICATION_FAILURE_TOTAL.labels(channel=log.channel).inc()
        logger.warning("Notification %s failed after %d attempts: %s", log.id, retry_count, error_message)
        if self.event_publisher is not None:
            await self.event_publisher.notification_failed(log, retry_count=retry_count, reason=error_message)

    # Retries -------------------------------------------------------------------------------
    async def claim_due_retries(self, *, limit: int, claim_timeout: timedelta | None = None) -> list[str]:
        """Claim up to ``limit`` due entries; only ids this call won are returned."""

        now = self._clock()
        if claim_timeout is not None:
            released = await self.repository.release_stale_claims(claimed_before=now - claim_timeout)
            if released:
                logger.warning("Released %d stale retry claims", released)

        claimed: list[str] = []
        for log_id in await self.repository.due_retry_ids(now=now, limit=limit):
            if await self.repository.claim_retry(log_id, now=now):
                claimed.append(log_id)
            else:
                NOTIFICATION_CLAIM_CONFLICTS_TOTAL.inc()
        return claimed

    async def retry_delivery(self, log_id: str) -> bool:
        """Re-send a claimed entry with its stored content. False when the entry was skipped."""

        log = await self.repository.get_log(log_id)
        if log is None or log.status != LogStatus.PROCESSING:
            return False

        with bind_tenant(log.tenant_id):
            settings = await self.repository.get_channel_settings(log.tenant_id, log.channel)
            adapter = self.delivery.get(log.channel)
            try:
                config = load_channel_config(settings, log.channel)
                if adapter is None:
                    raise ChannelConfigurationError(f"No delivery adapter registered for {log.channel}")
            except ChannelConfigurationError as exc:
                await self.repository.release_claim(log.id)
                await self.repository.add_event(log.id, event_type="claim_released", payload=str(exc))
                NOTIFICATION_RETRIES_SKIPPED_TOTAL.labels(channel=log.channel).inc()
                logger.info("Skipping retry of %s: %s", log.id, exc)
                return False

            outcome = await self._deliver(adapter, config, log)
            if outcome.success and outcome.message_id:
                await self._record_success(log, outcome.message_id)
            else:
                await self.handle_failure(log, outcome.error or "Retry failed")
            await self.repository.commit()
            NOTIFICATION_RETRIES_PROCESSED_TOTAL.labels(channel=log.channel).inc()
            return True

    async def process_retries(self, *, limit: int = 50, claim_timeout: timedelta | None = None) -> int:
        """Claim and re-send due entries inside this service's session."""

        claimed = await self.claim_due_retries(limit=limit, claim_timeout=claim_timeout)
        await self.repository.commit()
        processed = 0
        for log_id in claimed:
            if await self.retry_delivery(log_id):
                processed += 1
        return processed


def build_notification_service(
    session: AsyncSession,
    delivery: DeliveryRegistry,
    settings: ServiceSettings,
    *,
    event_publisher: NotificationEventPublisher | None = None,
) -> NotificationService:
    """Session-bound service configured from ``ServiceSettings``."""

    return NotificationService(
        NotificationRepository(session),
        delivery,
        retry_policy=RetryPolicy(
            max_retries=settings.notification_max_retries,
            base_minutes=settings.notification_backoff_base_minutes,
        ),
        event_publisher=event_publisher,
        default_language=settings.notification_default_language,
        default_tenant_name=settings.notification_default_tenant_name,
    )
