"""Lifecycle events published by the dispatch engine."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from services.common.kafka import KafkaProducerStub

from .models import NotificationLog

TOPIC_SENT = "notification.sent.v1"
TOPIC_FAILED = "notification.failed.v1"
TOPIC_RETRY_SCHEDULED = "notification.retry_scheduled.v1"


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def mask_recipient(recipient: str) -> str:
    """Hide most of an email local part or phone number."""

    if "@" in recipient:
        name, domain = recipient.split("@", 1)
        if len(name) <= 2:
            return f"{name[:1]}*@{domain}"
        return f"{name[0]}{'*' * (len(name) - 2)}{name[-1]}@{domain}"
    if len(recipient) <= 4:
        return "*" * len(recipient)
    return "*" * (len(recipient) - 4) + recipient[-4:]


class NotificationEventPublisher:
    """Publishes ledger transitions so other modules can react to them."""

    def __init__(self, producer: KafkaProducerStub | None) -> None:
        self._producer = producer

    async def _emit(self, topic: str, payload: dict[str, Any]) -> None:
        if self._producer is None:
            return
        envelope = {
            "eventType": topic,
            "occurredAt": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        await self._producer.send(topic, envelope)

    async def notification_sent(self, log: NotificationLog, *, message_id: str) -> None:
        await self._emit(TOPIC_SENT, {"notification": self._serialize(log), "messageId": message_id})

    async def notification_retry_scheduled(
        self,
        log: NotificationLog,
        *,
        retry_count: int,
        next_retry_at: datetime,
        reason: str,
    ) -> None:
        await self._emit(
            TOPIC_RETRY_SCHEDULED,
            {
                "notification": self._serialize(log),
                "retryCount": retry_count,
                "nextRetryAt": _iso(next_retry_at),
                "reason": reason,
            },
        )

    async def notification_failed(self, log: NotificationLog, *, retry_count: int, reason: str) -> None:
        await self._emit(
            TOPIC_FAILED,
            {"notification": self._serialize(log), "retryCount": retry_count, "reason": reason},
        )

    def _serialize(self, log: NotificationLog) -> dict[str, Any]:
        return {
            "id": log.id,
            "tenantId": log.tenant_id,
            "channel": log.channel,
            "eventType": log.event_type,
            "recipient": mask_recipient(log.recipient),
            "referenceId": log.reference_id,
            "referenceType": log.reference_type,
            "createdAt": _iso(log.created_at),
        }
