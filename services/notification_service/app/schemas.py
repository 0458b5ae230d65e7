"""Pydantic schemas for the notification dispatch engine."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import Channel


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Provider credentials ---------------------------------------------------------------------
class SendGridConfig(BaseModel):
    provider: Literal["sendgrid"] = "sendgrid"
    api_key: str = Field(min_length=1, alias="apiKey")
    from_email: str = Field(default="noreply@example.com", alias="fromEmail")
    from_name: str = Field(default="Notifications", alias="fromName")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ResendConfig(BaseModel):
    provider: Literal["resend"] = "resend"
    api_key: str = Field(min_length=1, alias="apiKey")
    from_email: str = Field(default="noreply@example.com", alias="fromEmail")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TwilioConfig(BaseModel):
    provider: Literal["twilio"] = "twilio"
    account_sid: str = Field(min_length=1, alias="accountSid")
    auth_token: str = Field(min_length=1, alias="authToken")
    from_number: str = Field(min_length=1, alias="fromNumber")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


ProviderConfig = Annotated[
    Union[SendGridConfig, ResendConfig, TwilioConfig],
    Field(discriminator="provider"),
]


# Dispatch ---------------------------------------------------------------------------------
class Recipient(_CamelModel):
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    name: str = Field(default="", max_length=255)

    @field_validator("email", "phone")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    def address_for(self, channel: str) -> str | None:
        if channel == Channel.EMAIL:
            return self.email
        return self.phone


class SendNotificationRequest(_CamelModel):
    tenant_id: str = Field(min_length=1, max_length=64, alias="tenantId")
    channel: Channel
    event_type: str = Field(min_length=1, max_length=64, alias="eventType")
    recipient: Recipient
    variables: dict[str, Any] = Field(default_factory=dict)
    reference_id: str | None = Field(default=None, max_length=64, alias="referenceId")
    reference_type: str | None = Field(default=None, max_length=64, alias="referenceType")
    user_id: str | None = Field(default=None, max_length=64, alias="userId")
    language: str | None = Field(default=None, min_length=2, max_length=10)
    template_code: str | None = Field(default=None, max_length=64, alias="templateCode")

    @field_validator("language", "template_code")
    @classmethod
    def _normalize(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().lower() or None


class NotificationResult(_CamelModel):
    success: bool
    log_id: str = Field(default="", alias="logId")
    message_id: str | None = Field(default=None, alias="messageId")
    error: str | None = None


class BatchSendRequest(_CamelModel):
    notifications: list[SendNotificationRequest] = Field(min_length=1, max_length=100)


class BatchSendResponse(BaseModel):
    results: list[NotificationResult]
    sent: int
    failed: int


class ChannelResult(_CamelModel):
    channel: Channel
    success: bool
    log_id: str = Field(default="", alias="logId")
    message_id: str | None = Field(default=None, alias="messageId")
    error: str | None = None


class DispatchResult(_CamelModel):
    success: bool
    module: str
    template_code: str | None = Field(default=None, alias="templateCode")
    channel_results: list[ChannelResult] = Field(default_factory=list, alias="channelResults")
    error: str | None = None


class ModuleNotifyRequest(_CamelModel):
    tenant_id: str = Field(min_length=1, max_length=64, alias="tenantId")
    event_type: str = Field(min_length=1, max_length=64, alias="eventType")
    recipient: Recipient
    data: dict[str, Any] = Field(default_factory=dict)
    channels: list[Channel] | None = None
    reference_id: str | None = Field(default=None, max_length=64, alias="referenceId")
    reference_type: str | None = Field(default=None, max_length=64, alias="referenceType")
    user_id: str | None = Field(default=None, max_length=64, alias="userId")
    language: str | None = Field(default=None, min_length=2, max_length=10)

    @field_validator("language")
    @classmethod
    def _normalize_language(cls, value: str | None) -> str | None:
        return value.strip().lower() if value is not None else None


class RegisteredModulesResponse(BaseModel):
    modules: list[str]


# Administration ---------------------------------------------------------------------------
class ChannelSettingsUpdate(_CamelModel):
    is_enabled: bool = Field(alias="isEnabled")
    provider_name: str | None = Field(default=None, max_length=64, alias="providerName")
    config: dict[str, Any] = Field(default_factory=dict)


class ChannelSettingsResponse(_CamelModel):
    tenant_id: str = Field(alias="tenantId")
    channel: Channel
    is_enabled: bool = Field(alias="isEnabled")
    provider_name: str = Field(alias="providerName")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")


class TemplateCreate(_CamelModel):
    tenant_id: str = Field(default="", max_length=64, alias="tenantId")
    code: str = Field(min_length=1, max_length=64)
    channel: Channel
    language: str = Field(default="en", min_length=2, max_length=10)
    subject: str | None = None
    body: str = Field(min_length=1)
    is_active: bool = Field(default=True, alias="isActive")

    @field_validator("code", "language")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return value.strip().lower()


class TemplateResponse(_CamelModel):
    id: str
    tenant_id: str = Field(alias="tenantId")
    code: str
    channel: Channel
    language: str
    subject: str | None
    body: str
    is_active: bool = Field(alias="isActive")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")


# Ledger -----------------------------------------------------------------------------------
class NotificationLogResponse(_CamelModel):
    id: str
    tenant_id: str = Field(alias="tenantId")
    channel: str
    event_type: str = Field(alias="eventType")
    recipient: str
    subject: str | None
    body: str
    status: str
    retry_count: int = Field(alias="retryCount")
    max_retries: int = Field(alias="maxRetries")
    next_retry_at: datetime | None = Field(default=None, alias="nextRetryAt")
    external_message_id: str | None = Field(default=None, alias="externalMessageId")
    error_message: str | None = Field(default=None, alias="errorMessage")
    reference_id: str | None = Field(default=None, alias="referenceId")
    reference_type: str | None = Field(default=None, alias="referenceType")
    created_at: datetime = Field(alias="createdAt")
    sent_at: datetime | None = Field(default=None, alias="sentAt")
    failed_at: datetime | None = Field(default=None, alias="failedAt")


class NotificationLogListResponse(BaseModel):
    items: list[NotificationLogResponse]
    total: int


class NotificationLogEventResponse(_CamelModel):
    type: str
    payload: str
    created_at: datetime = Field(alias="createdAt")


class RetrySweepResponse(BaseModel):
    processed: int
