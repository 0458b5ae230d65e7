"""Persistence helpers for the notification dispatch engine."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import Select, and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .models import (
    ChannelSettings,
    LogStatus,
    NotificationLog,
    NotificationLogEvent,
    NotificationTemplate,
    Tenant,
)

# Statuses a ledger entry may leave through a delivery outcome. Terminal rows never match.
_IN_FLIGHT = (LogStatus.PENDING.value, LogStatus.PROCESSING.value)


class NotificationRepository:
    """Database access helpers for the dispatch engine."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def commit(self) -> None:
        """End the current unit of work; later statements open a new one."""

        await self.session.commit()

    # Tenants & channel settings ------------------------------------------------------------
    async def get_tenant_name(self, tenant_id: str) -> str | None:
        result = await self.session.execute(select(Tenant.name).where(Tenant.id == tenant_id))
        return result.scalar_one_or_none()

    async def upsert_tenant(self, tenant_id: str, name: str) -> Tenant:
        tenant = await self.session.get(Tenant, tenant_id)
        if tenant is None:
            tenant = Tenant(id=tenant_id, name=name)
            self.session.add(tenant)
        else:
            tenant.name = name
        await self.session.flush()
        return tenant

    async def get_channel_settings(self, tenant_id: str, channel: str) -> ChannelSettings | None:
        result = await self.session.execute(
            select(ChannelSettings).where(
                ChannelSettings.tenant_id == tenant_id,
                ChannelSettings.channel == channel,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_channel_settings(
        self,
        tenant_id: str,
        channel: str,
        *,
        is_enabled: bool,
        provider_name: str | None,
        config_json: str | None,
    ) -> ChannelSettings:
        settings = await self.get_channel_settings(tenant_id, channel)
        if settings is None:
            settings = ChannelSettings(tenant_id=tenant_id, channel=channel)
            self.session.add(settings)
        settings.is_enabled = is_enabled
        settings.provider_name = provider_name
        settings.config_json = config_json
        await self.session.flush()
        await self.session.refresh(settings, attribute_names=["created_at", "updated_at"])
        return settings

    # Templates -----------------------------------------------------------------------------
    async def find_template_candidates(
        self,
        *,
        tenant_ids: Sequence[str],
        code: str,
        channel: str,
        languages: Sequence[str],
    ) -> list[NotificationTemplate]:
        result = await self.session.execute(
            select(NotificationTemplate).where(
                NotificationTemplate.tenant_id.in_(list(tenant_ids)),
                NotificationTemplate.code == code,
                NotificationTemplate.channel == channel,
                NotificationTemplate.language.in_(list(languages)),
                NotificationTemplate.is_active.is_(True),
            )
        )
        return list(result.scalars())

    async def create_template(
        self,
        *,
        tenant_id: str,
        code: str,
        channel: str,
        language: str,
        subject: str | None,
        body: str,
        is_active: bool = True,
    ) -> NotificationTemplate:
        template = NotificationTemplate(
            tenant_id=tenant_id,
            code=code,
            channel=channel,
            language=language,
            subject=subject,
            body=body,
            is_active=is_active,
        )
        self.session.add(template)
        await self.session.flush()
        await self.session.refresh(template, attribute_names=["created_at", "updated_at"])
        return template

    # Ledger --------------------------------------------------------------------------------
    async def create_log(
        self,
        *,
        tenant_id: str,
        template_id: str | None,
        channel: str,
        event_type: str,
        recipient: str,
        recipient_name: str | None,
        subject: str | None,
        body: str,
        max_retries: int,
        reference_id: str | None,
        reference_type: str | None,
        user_id: str | None,
        metadata_json: str | None,
    ) -> NotificationLog:
        log = NotificationLog(
            tenant_id=tenant_id,
            template_id=template_id,
            channel=channel,
            event_type=event_type,
            recipient=recipient,
            recipient_name=recipient_name,
            subject=subject,
            body=body,
            status=LogStatus.PENDING.value,
            retry_count=0,
            max_retries=max_retries,
            reference_id=reference_id,
            reference_type=reference_type,
            user_id=user_id,
            metadata_json=metadata_json,
        )
        self.session.add(log)
        await self.session.flush()
        await self.session.refresh(log, attribute_names=["created_at", "updated_at"])
        return log

    async def get_log(self, log_id: str) -> NotificationLog | None:
        result = await self.session.execute(
            select(NotificationLog)
            .options(selectinload(NotificationLog.events))
            .where(NotificationLog.id == log_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_logs(
        self,
        *,
        tenant_id: str | None,
        reference_id: str | None,
        reference_type: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> tuple[list[NotificationLog], int]:
        filters = []
        if tenant_id is not None:
            filters.append(NotificationLog.tenant_id == tenant_id)
        if reference_id is not None:
            filters.append(NotificationLog.reference_id == reference_id)
        if reference_type is not None:
            filters.append(NotificationLog.reference_type == reference_type)
        if status is not None:
            filters.append(NotificationLog.status == status)

        base: Select[tuple[NotificationLog]] = select(NotificationLog).order_by(
            NotificationLog.created_at, NotificationLog.id
        )
        count: Select[tuple[int]] = select(func.count(NotificationLog.id))
        if filters:
            clause = and_(*filters)
            base = base.where(clause)
            count = count.where(clause)

        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(base.offset(offset).limit(limit))
        return list(result.scalars()), total

    async def add_event(self, log_id: str, *, event_type: str, payload: str) -> NotificationLogEvent:
        event = NotificationLogEvent(log_id=log_id, type=event_type, payload=payload)
        self.session.add(event)
        await self.session.flush()
        return event

    async def _conditional_update(self, log_id: str, from_statuses: Sequence[str], **values: object) -> bool:
        result = await self.session.execute(
            update(NotificationLog)
            .where(NotificationLog.id == log_id, NotificationLog.status.in_(list(from_statuses)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_sent(self, log_id: str, *, message_id: str, sent_at: datetime) -> bool:
        return await self._conditional_update(
            log_id,
            _IN_FLIGHT,
            status=LogStatus.SENT.value,
            sent_at=sent_at,
            external_message_id=message_id,
            next_retry_at=None,
            claimed_at=None,
        )

    async def schedule_retry(
        self,
        log_id: str,
        *,
        retry_count: int,
        next_retry_at: datetime,
        error_message: str,
    ) -> bool:
        return await self._conditional_update(
            log_id,
            _IN_FLIGHT,
            status=LogStatus.RETRYING.value,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            error_message=error_message,
            claimed_at=None,
        )

    async def mark_failed(
        self,
        log_id: str,
        *,
        retry_count: int,
        error_message: str,
        failed_at: datetime,
    ) -> bool:
        return await self._conditional_update(
            log_id,
            _IN_FLIGHT,
            status=LogStatus.FAILED.value,
            retry_count=retry_count,
            failed_at=failed_at,
            next_retry_at=None,
            error_message=error_message,
            claimed_at=None,
        )

    # Retry claims --------------------------------------------------------------------------
    async def due_retry_ids(self, *, now: datetime, limit: int) -> list[str]:
        result = await self.session.execute(
            select(NotificationLog.id)
            .where(
                NotificationLog.status == LogStatus.RETRYING.value,
                NotificationLog.next_retry_at <= now,
            )
            .order_by(NotificationLog.next_retry_at, NotificationLog.id)
            .limit(limit)
        )
        return list(result.scalars())

    async def claim_retry(self, log_id: str, *, now: datetime) -> bool:
        """Atomically move a due ``retrying`` entry to ``processing``; False if someone else won."""

        result = await self.session.execute(
            update(NotificationLog)
            .where(
                NotificationLog.id == log_id,
                NotificationLog.status == LogStatus.RETRYING.value,
                NotificationLog.next_retry_at <= now,
            )
            .values(status=LogStatus.PROCESSING.value, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_claim(self, log_id: str) -> bool:
        return await self._conditional_update(
            log_id,
            (LogStatus.PROCESSING.value,),
            status=LogStatus.RETRYING.value,
            claimed_at=None,
        )

    async def release_stale_claims(self, *, claimed_before: datetime) -> int:
        result = await self.session.execute(
            update(NotificationLog)
            .where(
                NotificationLog.status == LogStatus.PROCESSING.value,
                NotificationLog.claimed_at < claimed_before,
            )
            .values(status=LogStatus.RETRYING.value, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
