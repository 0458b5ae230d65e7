"""HTTP routes for dispatching and inspecting notifications."""

from __future__ import annotations

import json
from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import IntegrityError

from ..dependencies import (
    get_module_notifier,
    get_module_registry,
    get_notification_service,
    get_repository,
    get_retry_scheduler,
)
from ..models import Channel
from ..providers import ChannelConfigurationError, parse_provider_config
from ..registry import ModuleAdapterRegistry, ModuleNotifier
from ..repository import NotificationRepository
from ..scheduler import RetryScheduler
from ..schemas import (
    BatchSendRequest,
    BatchSendResponse,
    ChannelSettingsResponse,
    ChannelSettingsUpdate,
    DispatchResult,
    ModuleNotifyRequest,
    NotificationLogEventResponse,
    NotificationLogListResponse,
    NotificationLogResponse,
    NotificationResult,
    RegisteredModulesResponse,
    RetrySweepResponse,
    SendNotificationRequest,
    TemplateCreate,
    TemplateResponse,
)
from ..services import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _serialize_datetime(value):
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _serialize_log(log) -> dict[str, object]:
    return {
        "id": log.id,
        "tenantId": log.tenant_id,
        "channel": log.channel,
        "eventType": log.event_type,
        "recipient": log.recipient,
        "subject": log.subject,
        "body": log.body,
        "status": log.status,
        "retryCount": log.retry_count,
        "maxRetries": log.max_retries,
        "nextRetryAt": _serialize_datetime(log.next_retry_at),
        "externalMessageId": log.external_message_id,
        "errorMessage": log.error_message,
        "referenceId": log.reference_id,
        "referenceType": log.reference_type,
        "createdAt": _serialize_datetime(log.created_at),
        "sentAt": _serialize_datetime(log.sent_at),
        "failedAt": _serialize_datetime(log.failed_at),
    }


def _serialize_template(template) -> dict[str, object]:
    return {
        "id": template.id,
        "tenantId": template.tenant_id,
        "code": template.code,
        "channel": template.channel,
        "language": template.language,
        "subject": template.subject,
        "body": template.body,
        "isActive": template.is_active,
        "createdAt": _serialize_datetime(template.created_at),
        "updatedAt": _serialize_datetime(template.updated_at),
    }


@router.post("/send", response_model=NotificationResult)
async def send_notification(
    payload: SendNotificationRequest,
    service: NotificationService = Depends(get_notification_service),
) -> NotificationResult:
    return await service.send_notification(payload)


@router.post("/send/batch", response_model=BatchSendResponse)
async def send_batch(
    payload: BatchSendRequest,
    service: NotificationService = Depends(get_notification_service),
) -> BatchSendResponse:
    results = await service.send_batch(payload.notifications)
    sent = sum(1 for result in results if result.success)
    return BatchSendResponse(results=results, sent=sent, failed=len(results) - sent)


@router.get("/modules", response_model=RegisteredModulesResponse)
async def list_modules(
    modules: ModuleAdapterRegistry = Depends(get_module_registry),
) -> RegisteredModulesResponse:
    return RegisteredModulesResponse(modules=modules.registered_modules())


@router.post("/modules/{module}/notify", response_model=DispatchResult)
async def notify_module(
    module: str,
    payload: ModuleNotifyRequest,
    notifier: ModuleNotifier = Depends(get_module_notifier),
) -> DispatchResult:
    if notifier.registry.get_adapter(module) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Module not registered")
    return await notifier.notify(module, payload)


@router.get("/logs", response_model=NotificationLogListResponse)
async def list_logs(
    tenant_id: str | None = Query(default=None, alias="tenantId"),
    reference_id: str | None = Query(default=None, alias="referenceId"),
    reference_type: str | None = Query(default=None, alias="referenceType"),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    repository: NotificationRepository = Depends(get_repository),
) -> NotificationLogListResponse:
    logs, total = await repository.list_logs(
        tenant_id=tenant_id,
        reference_id=reference_id,
        reference_type=reference_type,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    items = [NotificationLogResponse.model_validate(_serialize_log(log)) for log in logs]
    return NotificationLogListResponse(items=items, total=total)


@router.get("/logs/{log_id}", response_model=NotificationLogResponse)
async def get_log(
    log_id: str,
    repository: NotificationRepository = Depends(get_repository),
) -> NotificationLogResponse:
    log = await repository.get_log(log_id)
    if log is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification log not found")
    return NotificationLogResponse.model_validate(_serialize_log(log))


@router.get("/logs/{log_id}/events", response_model=list[NotificationLogEventResponse])
async def get_log_events(
    log_id: str,
    repository: NotificationRepository = Depends(get_repository),
) -> list[NotificationLogEventResponse]:
    log = await repository.get_log(log_id)
    if log is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification log not found")
    return [
        NotificationLogEventResponse.model_validate(
            {"type": event.type, "payload": event.payload, "createdAt": _serialize_datetime(event.created_at)}
        )
        for event in log.events
    ]


@router.post("/retries/process", response_model=RetrySweepResponse)
async def process_retries(
    scheduler: RetryScheduler = Depends(get_retry_scheduler),
) -> RetrySweepResponse:
    return RetrySweepResponse(processed=await scheduler.process_retries())


@router.put("/settings/{tenant_id}/{channel}", response_model=ChannelSettingsResponse)
async def update_channel_settings(
    tenant_id: str,
    channel: Channel,
    payload: ChannelSettingsUpdate,
    repository: NotificationRepository = Depends(get_repository),
) -> ChannelSettingsResponse:
    try:
        config = parse_provider_config(channel.value, payload.provider_name, payload.config)
    except ChannelConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    settings = await repository.upsert_channel_settings(
        tenant_id,
        channel.value,
        is_enabled=payload.is_enabled,
        provider_name=config.provider,
        config_json=json.dumps(config.model_dump(exclude={"provider"})),
    )
    return ChannelSettingsResponse(
        tenantId=settings.tenant_id,
        channel=channel,
        isEnabled=settings.is_enabled,
        providerName=config.provider,
        updatedAt=_serialize_datetime(settings.updated_at),
    )


@router.post("/templates", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    payload: TemplateCreate,
    repository: NotificationRepository = Depends(get_repository),
) -> TemplateResponse:
    try:
        template = await repository.create_template(
            tenant_id=payload.tenant_id,
            code=payload.code,
            channel=payload.channel.value,
            language=payload.language,
            subject=payload.subject,
            body=payload.body,
            is_active=payload.is_active,
        )
    except IntegrityError:
        await repository.session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Active template already exists")
    return TemplateResponse.model_validate(_serialize_template(template))
