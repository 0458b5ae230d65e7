import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from services.common import create_schema, dispose_engines, get_session_factory, lifespan_session
from services.common.kafka import KafkaConsumerStub, KafkaProducerStub
from services.notification_service.app.events import TOPIC_RETRY_SCHEDULED, TOPIC_SENT, NotificationEventPublisher
from services.notification_service.app.models import Base, NotificationLog, NotificationLogEvent
from services.notification_service.app.providers import DeliveryRegistry, DeliveryResult
from services.notification_service.app.repository import NotificationRepository
from services.notification_service.app.schemas import SendNotificationRequest
from services.notification_service.app.services import NotificationService, RetryPolicy

TENANT = "tenant-t"
TWILIO_CONFIG = {"accountSid": "AC123", "authToken": "secret", "fromNumber": "+15550000000"}


class _MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class _ScriptedAdapter:
    """Delivery adapter replaying a fixed list of outcomes; the last one repeats."""

    def __init__(self, channel: str, *outcomes: DeliveryResult | Exception) -> None:
        self.channel = channel
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def send(self, config, *, recipient, subject, body, recipient_name="") -> DeliveryResult:
        self.calls.append(
            {"config": config, "recipient": recipient, "subject": subject, "body": body, "name": recipient_name}
        )
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _BrokenRepository:
    async def get_channel_settings(self, tenant_id: str, channel: str):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))


async def _session_factory(tmp_path):
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}"
    await create_schema(database_url, Base.metadata)
    return get_session_factory(database_url)


async def _enable(session, channel: str, provider: str, config: dict[str, Any], *, enabled: bool = True) -> None:
    await NotificationRepository(session).upsert_channel_settings(
        TENANT,
        channel,
        is_enabled=enabled,
        provider_name=provider,
        config_json=json.dumps(config),
    )


def _overdue_request(**overrides: Any) -> SendNotificationRequest:
    payload: dict[str, Any] = {
        "tenantId": TENANT,
        "channel": "whatsapp",
        "eventType": "invoice_overdue",
        "recipient": {"phone": "+15551234567", "name": "Acme"},
        "variables": {
            "customerName": "Acme",
            "invoiceNumber": "INV-100",
            "balanceAmount": "250.00",
            "currency": "USD",
        },
        "referenceId": "inv-100",
        "referenceType": "invoice",
    }
    payload.update(overrides)
    return SendNotificationRequest.model_validate(payload)


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


async def _count_logs(session) -> int:
    return (await session.execute(select(func.count(NotificationLog.id)))).scalar_one()


@pytest.mark.asyncio
async def test_scenario_a_whatsapp_overdue_is_sent(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("whatsapp", DeliveryResult.sent("SM100"))
    tracker = _MetricTracker("notification_sent_total", {"channel": "whatsapp"})
    try:
        async with lifespan_session(factory) as session:
            await _enable(session, "whatsapp", "twilio", TWILIO_CONFIG)
            service = NotificationService(NotificationRepository(session), DeliveryRegistry([adapter]))

            result = await service.send_notification(_overdue_request())

            assert result.success is True
            assert result.message_id == "SM100"
            assert result.log_id
            assert len(adapter.calls) == 1
            assert adapter.calls[0]["recipient"] == "+15551234567"
            assert adapter.calls[0]["body"] == (
                "URGENT: Invoice INV-100 is overdue. Balance: USD 250.00. Please pay immediately."
            )

            log = await service.repository.get_log(result.log_id)
            assert log is not None
            assert log.status == "sent"
            assert log.external_message_id == "SM100"
            assert log.next_retry_at is None
            assert log.sent_at is not None
            assert log.reference_id == "inv-100"
            assert [event.type for event in log.events] == ["created", "sent"]
            assert await _count_logs(session) == 1
        assert tracker.delta() == 1
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_scenario_b_three_failures_end_in_failed(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    clock = _Clock()
    adapter = _ScriptedAdapter(
        "whatsapp",
        DeliveryResult.failed("Twilio error: 500 first"),
        DeliveryResult.failed("Twilio error: 500 second"),
        DeliveryResult.failed("Twilio error: 500 third"),
    )
    failures = _MetricTracker("notification_failure_total", {"channel": "whatsapp"})
    try:
        async with lifespan_session(factory) as session:
            await _enable(session, "whatsapp", "twilio", TWILIO_CONFIG)
            service = NotificationService(
                NotificationRepository(session), DeliveryRegistry([adapter]), clock=clock
            )

            result = await service.send_notification(_overdue_request())
            assert result.success is False
            assert result.error == "Twilio error: 500 first"
            log = await service.repository.get_log(result.log_id)
            assert log is not None
            assert (log.status, log.retry_count) == ("retrying", 1)
            assert _naive(log.next_retry_at) == _naive(clock.now + timedelta(minutes=10))

            clock.advance(minutes=10)
            assert await service.process_retries() == 1
            log = await service.repository.get_log(result.log_id)
            assert (log.status, log.retry_count) == ("retrying", 2)
            assert _naive(log.next_retry_at) == _naive(clock.now + timedelta(minutes=20))
            assert log.error_message == "Twilio error: 500 second"

            clock.advance(minutes=20)
            assert await service.process_retries() == 1
            log = await service.repository.get_log(result.log_id)
            assert log.status == "failed"
            assert log.retry_count == 3
            assert log.next_retry_at is None
            assert log.failed_at is not None
            assert log.external_message_id is None
            assert log.error_message == "Twilio error: 500 third"
            assert [event.type for event in log.events] == [
                "created",
                "retry_scheduled",
                "retry_scheduled",
                "failed",
            ]

            clock.advance(days=1)
            assert await service.process_retries() == 0
            assert len(adapter.calls) == 3
        assert failures.delta() == 1
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_scenario_c_no_templates_anywhere_uses_defaults(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("email", DeliveryResult.sent("sg-1"))
    fallback = _MetricTracker("notification_template_fallback_total", {"channel": "email"})
    try:
        async with lifespan_session(factory) as session:
            await _enable(session, "email", "sendgrid", {"apiKey": "SG.key"})
            await NotificationRepository(session).upsert_tenant(TENANT, "Acme Furniture")
            service = NotificationService(NotificationRepository(session), DeliveryRegistry([adapter]))

            result = await service.send_notification(
                _overdue_request(channel="email", recipient={"email": "client@example.com", "name": "Client"}, language="de")
            )

            assert result.success is True
            call = adapter.calls[0]
            assert call["subject"] == "OVERDUE: Invoice INV-100"
            assert call["body"].startswith("Dear Acme,")
            assert call["body"].endswith("Best regards,\nAcme Furniture")
            assert call["name"] == "Client"
        assert fallback.delta() == 1
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_stored_template_wins_over_defaults(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("whatsapp", DeliveryResult.sent("SM1"))
    try:
        async with lifespan_session(factory) as session:
            await _enable(session, "whatsapp", "twilio", TWILIO_CONFIG)
            repository = NotificationRepository(session)
            template = await repository.create_template(
                tenant_id="",
                code="invoice_overdue",
                channel="whatsapp",
                language="en",
                subject=None,
                body="{{tenantName}}: {{invoiceNumber}} overdue",
            )
            service = NotificationService(repository, DeliveryRegistry([adapter]))

            result = await service.send_notification(_overdue_request(language="hi"))

            assert adapter.calls[0]["body"] == "Our Business: INV-100 overdue"
            log = await repository.get_log(result.log_id)
            assert log is not None
            assert log.template_id == template.id
            metadata = json.loads(log.metadata_json)
            assert metadata["recipientName"] == "Acme"
            assert metadata["variables"]["tenantName"] == "Our Business"
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_disabled_channel_creates_no_ledger_rows(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("whatsapp", DeliveryResult.sent("never"))
    rejected = _MetricTracker("notification_rejected_total", {"channel": "whatsapp", "reason": "channel_disabled"})
    try:
        async with lifespan_session(factory) as session:
            await _enable(session, "whatsapp", "twilio", TWILIO_CONFIG, enabled=False)
            service = NotificationService(NotificationRepository(session), DeliveryRegistry([adapter]))

            result = await service.send_notification(_overdue_request())

            assert result.success is False
            assert result.log_id == ""
            assert result.error == "whatsapp notifications not enabled for this tenant"
            assert adapter.calls == []
            assert await _count_logs(session) == 0
        assert rejected.delta() == 1
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_missing_settings_and_invalid_config_are_rejected(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("whatsapp", DeliveryResult.sent("never"))
    invalid = _MetricTracker("notification_rejected_total", {"channel": "whatsapp", "reason": "invalid_config"})
    try:
        async with lifespan_session(factory) as session:
            service = NotificationService(NotificationRepository(session), DeliveryRegistry([adapter]))
            missing = await service.send_notification(_overdue_request())
            assert missing.success is False
            assert "not enabled" in (missing.error or "")

            await _enable(session, "whatsapp", "twilio", {"accountSid": "AC123"})
            broken = await service.send_notification(_overdue_request())
            assert broken.success is False
            assert broken.log_id == ""
            assert "twilio is not configured" in (broken.error or "")
            assert adapter.calls == []
            assert await _count_logs(session) == 0
        assert invalid.delta() == 1
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_missing_recipient_address_creates_no_ledger_rows(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("whatsapp", DeliveryResult.sent("never"))
    try:
        async with lifespan_session(factory) as session:
            await _enable(session, "whatsapp", "twilio", TWILIO_CONFIG)
            service = NotificationService(NotificationRepository(session), DeliveryRegistry([adapter]))

            result = await service.send_notification(
                _overdue_request(recipient={"email": "only@example.com", "phone": "  ", "name": "Acme"})
            )

            assert result.success is False
            assert result.error == "No phone address for recipient"
            assert result.log_id == ""
            assert adapter.calls == []
            assert await _count_logs(session) == 0
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_adapter_exception_is_routed_to_retry(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("whatsapp", RuntimeError("socket closed"))
    try:
        async with lifespan_session(factory) as session:
            await _enable(session, "whatsapp", "twilio", TWILIO_CONFIG)
            service = NotificationService(NotificationRepository(session), DeliveryRegistry([adapter]))

            result = await service.send_notification(_overdue_request())

            assert result.success is False
            assert result.error == "socket closed"
            log = await service.repository.get_log(result.log_id)
            assert log is not None
            assert log.status == "retrying"
            assert log.next_retry_at is not None
            assert log.error_message == "socket closed"
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_max_retries_of_one_fails_on_first_error(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("whatsapp", DeliveryResult.failed("Twilio error: 503"))
    try:
        async with lifespan_session(factory) as session:
            await _enable(session, "whatsapp", "twilio", TWILIO_CONFIG)
            service = NotificationService(
                NotificationRepository(session),
                DeliveryRegistry([adapter]),
                retry_policy=RetryPolicy(max_retries=1),
            )

            result = await service.send_notification(_overdue_request())

            log = await service.repository.get_log(result.log_id)
            assert log is not None
            assert log.status == "failed"
            assert log.retry_count == 1
            assert log.next_retry_at is None
    finally:
        await dispose_engines()


def test_retry_policy_backoff_doubles() -> None:
    policy = RetryPolicy()

    assert [policy.backoff(count) for count in (1, 2, 3)] == [
        timedelta(minutes=10),
        timedelta(minutes=20),
        timedelta(minutes=40),
    ]
    assert RetryPolicy(base_minutes=1).backoff(2) == timedelta(minutes=4)


@pytest.mark.asyncio
async def test_storage_errors_come_back_as_results() -> None:
    service = NotificationService(_BrokenRepository(), DeliveryRegistry())  # type: ignore[arg-type]
    tracker = _MetricTracker("notification_rejected_total", {"channel": "whatsapp", "reason": "storage_error"})

    result = await service.send_notification(_overdue_request())

    assert result.success is False
    assert result.log_id == ""
    assert result.error == "Notification ledger unavailable"
    assert tracker.delta() == 1


@pytest.mark.asyncio
async def test_lifecycle_events_are_published_with_masked_recipient(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("whatsapp", DeliveryResult.failed("Twilio error: 500"), DeliveryResult.sent("SM9"))
    received: list[tuple[str, dict[str, Any]]] = []

    async def _collect(topic: str, message: dict[str, Any]) -> None:
        received.append((topic, message))

    producer = KafkaProducerStub()
    await producer.connect()
    consumer = KafkaConsumerStub([TOPIC_SENT, TOPIC_RETRY_SCHEDULED], _collect)
    await consumer.start()
    clock = _Clock()
    try:
        async with lifespan_session(factory) as session:
            await _enable(session, "whatsapp", "twilio", TWILIO_CONFIG)
            service = NotificationService(
                NotificationRepository(session),
                DeliveryRegistry([adapter]),
                event_publisher=NotificationEventPublisher(producer),
                clock=clock,
            )
            result = await service.send_notification(_overdue_request())
            clock.advance(minutes=15)
            assert await service.process_retries() == 1
    finally:
        await consumer.stop()
        await producer.close()
        await dispose_engines()

    assert [topic for topic, _ in received] == [TOPIC_RETRY_SCHEDULED, TOPIC_SENT]
    retry_message = received[0][1]
    assert retry_message["retryCount"] == 1
    assert retry_message["notification"]["id"] == result.log_id
    assert retry_message["notification"]["recipient"] == "********4567"
    assert received[1][1]["messageId"] == "SM9"


class _GatedAdapter:
    """Holds every send open until ``release`` is set."""

    def __init__(self, channel: str, result: DeliveryResult) -> None:
        self.channel = channel
        self.result = result
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def send(self, config, *, recipient, subject, body, recipient_name="") -> DeliveryResult:
        self.started.set()
        await self.release.wait()
        return self.result


class _LedgerInspectingAdapter:
    """Reads the ledger from its own session while the delivery is in flight."""

    def __init__(self, channel: str, factory) -> None:
        self.channel = channel
        self._factory = factory
        self.statuses: list[str] = []
        self.events: list[str] = []

    async def send(self, config, *, recipient, subject, body, recipient_name="") -> DeliveryResult:
        async with lifespan_session(self._factory) as session:
            self.statuses = list((await session.execute(select(NotificationLog.status))).scalars())
            self.events = list((await session.execute(select(NotificationLogEvent.type))).scalars())
        return DeliveryResult.sent("SM-inflight")


async def _enable_tenant(factory, tenant_id: str) -> None:
    async with lifespan_session(factory) as session:
        await NotificationRepository(session).upsert_channel_settings(
            tenant_id,
            "whatsapp",
            is_enabled=True,
            provider_name="twilio",
            config_json=json.dumps(TWILIO_CONFIG),
        )


@pytest.mark.asyncio
async def test_pending_entry_is_committed_before_the_provider_call(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _LedgerInspectingAdapter("whatsapp", factory)
    try:
        await _enable_tenant(factory, TENANT)
        async with lifespan_session(factory) as session:
            service = NotificationService(NotificationRepository(session), DeliveryRegistry([adapter]))
            result = await service.send_notification(_overdue_request())

        assert result.success is True
        assert adapter.statuses == ["pending"]
        assert adapter.events == ["created"]
        async with lifespan_session(factory) as session:
            log = await NotificationRepository(session).get_log(result.log_id)
            assert log is not None
            assert log.status == "sent"
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_slow_provider_does_not_block_another_tenant(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    slow = _GatedAdapter("whatsapp", DeliveryResult.sent("SM-slow"))
    fast = _ScriptedAdapter("whatsapp", DeliveryResult.sent("SM-fast"))

    async def _send(adapter, tenant_id: str):
        async with lifespan_session(factory) as session:
            service = NotificationService(NotificationRepository(session), DeliveryRegistry([adapter]))
            return await service.send_notification(_overdue_request(tenantId=tenant_id))

    try:
        await _enable_tenant(factory, "tenant-slow")
        await _enable_tenant(factory, "tenant-fast")
        slow_send = asyncio.create_task(_send(slow, "tenant-slow"))
        try:
            await asyncio.wait_for(slow.started.wait(), timeout=5)
            fast_result = await asyncio.wait_for(_send(fast, "tenant-fast"), timeout=3)
        finally:
            slow.release.set()
        slow_result = await slow_send

        assert fast_result.success is True
        assert fast_result.message_id == "SM-fast"
        assert slow_result.success is True
        assert slow_result.message_id == "SM-slow"
        async with lifespan_session(factory) as session:
            assert await _count_logs(session) == 2
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_request_language_and_template_code_are_normalised(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("whatsapp", DeliveryResult.sent("SM-hi"))
    try:
        await _enable_tenant(factory, TENANT)
        async with lifespan_session(factory) as session:
            repository = NotificationRepository(session)
            template = await repository.create_template(
                tenant_id=TENANT,
                code="invoice_overdue",
                channel="whatsapp",
                language="hi",
                subject=None,
                body="{{invoiceNumber}} bakaya hai",
            )
            service = NotificationService(repository, DeliveryRegistry([adapter]))

            result = await service.send_notification(
                _overdue_request(eventType="INVOICE_OVERDUE", language=" HI ", templateCode="Invoice_Overdue")
            )

            assert result.success is True
            assert adapter.calls[0]["body"] == "INV-100 bakaya hai"
            log = await repository.get_log(result.log_id)
            assert log is not None
            assert log.template_id == template.id
            assert log.event_type == "INVOICE_OVERDUE"
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_send_batch_returns_one_result_per_request(tmp_path) -> None:
    factory = await _session_factory(tmp_path)
    adapter = _ScriptedAdapter("whatsapp", DeliveryResult.sent("SM-batch"))
    try:
        await _enable_tenant(factory, TENANT)
        async with lifespan_session(factory) as session:
            service = NotificationService(NotificationRepository(session), DeliveryRegistry([adapter]))

            results = await service.send_batch(
                [
                    _overdue_request(referenceId="inv-1"),
                    _overdue_request(referenceId="inv-2", recipient={"email": "a@example.com"}),
                    _overdue_request(referenceId="inv-3"),
                ]
            )

            assert [result.success for result in results] == [True, False, True]
            assert results[1].log_id == ""
            assert results[1].error == "No phone address for recipient"
            assert await _count_logs(session) == 2
    finally:
        await dispose_engines()
