"""Template resolution and ``{{variable}}`` rendering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

from .models import GLOBAL_TENANT_ID, Channel, NotificationTemplate

FALLBACK_LANGUAGE = "en"
CUSTOM_EVENT = "custom"

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Substitute ``{{ key }}`` placeholders; unknown or ``None`` values become ``""``."""

    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, template)


@dataclass(frozen=True, slots=True)
class DefaultTemplate:
    body: str
    subject: str | None = None


_SIGNATURE = "\n\nBest regards,\n{{tenantName}}"

# Compiled-in content used when neither the tenant nor the platform configured a template.
# "message" covers the short-form channels (whatsapp, sms).
DEFAULT_TEMPLATES: dict[str, dict[str, DefaultTemplate]] = {
    "invoice_created": {
        "email": DefaultTemplate(
            subject="Invoice {{invoiceNumber}} Created",
            body=(
                "Dear {{customerName}},\n\n"
                "A new invoice has been created for you.\n\n"
                "Invoice Number: {{invoiceNumber}}\n"
                "Amount: {{currency}} {{totalAmount}}\n"
                "Due Date: {{dueDate}}\n\n"
                "Thank you for your business." + _SIGNATURE
            ),
        ),
        "message": DefaultTemplate(
            body=(
                "Hello {{customerName}}, your invoice {{invoiceNumber}} for {{currency}} "
                "{{totalAmount}} has been created. Due: {{dueDate}}."
            )
        ),
    },
    "invoice_issued": {
        "email": DefaultTemplate(
            subject="Invoice {{invoiceNumber}} - Payment Required",
            body=(
                "Dear {{customerName}},\n\n"
                "Your invoice is now due for payment.\n\n"
                "Invoice Number: {{invoiceNumber}}\n"
                "Amount: {{currency}} {{totalAmount}}\n"
                "Tax: {{currency}} {{taxAmount}}\n"
                "Due Date: {{dueDate}}\n\n"
                "Please arrange payment at your earliest convenience." + _SIGNATURE
            ),
        ),
        "message": DefaultTemplate(
            body=(
                "Hello {{customerName}}, invoice {{invoiceNumber}} for {{currency}} {{totalAmount}} "
                "is ready. Please pay by {{dueDate}}."
            )
        ),
    },
    "payment_reminder": {
        "email": DefaultTemplate(
            subject="Payment Reminder - Invoice {{invoiceNumber}}",
            body=(
                "Dear {{customerName}},\n\n"
                "This is a friendly reminder that invoice {{invoiceNumber}} is due for payment.\n\n"
                "Amount Due: {{currency}} {{balanceAmount}}\n"
                "Due Date: {{dueDate}}\n\n"
                "Please arrange payment as soon as possible to avoid any late fees." + _SIGNATURE
            ),
        ),
        "message": DefaultTemplate(
            body=(
                "Reminder: Invoice {{invoiceNumber}} for {{currency}} {{balanceAmount}} is due on "
                "{{dueDate}}. Please pay soon."
            )
        ),
    },
    "payment_received": {
        "email": DefaultTemplate(
            subject="Payment Received - Invoice {{invoiceNumber}}",
            body=(
                "Dear {{customerName}},\n\n"
                "We have received your payment for invoice {{invoiceNumber}}.\n\n"
                "Amount Paid: {{currency}} {{paidAmount}}\n"
                "Invoice Total: {{currency}} {{totalAmount}}\n\n"
                "Thank you for your payment!" + _SIGNATURE
            ),
        ),
        "message": DefaultTemplate(
            body="Thank you! Payment of {{currency}} {{paidAmount}} received for invoice {{invoiceNumber}}."
        ),
    },
    "payment_partial": {
        "email": DefaultTemplate(
            subject="Partial Payment Received - Invoice {{invoiceNumber}}",
            body=(
                "Dear {{customerName}},\n\n"
                "We have received a partial payment for invoice {{invoiceNumber}}.\n\n"
                "Amount Paid: {{currency}} {{paidAmount}}\n"
                "Balance Due: {{currency}} {{balanceAmount}}\n"
                "Due Date: {{dueDate}}\n\n"
                "Please arrange to pay the remaining balance." + _SIGNATURE
            ),
        ),
        "message": DefaultTemplate(
            body=(
                "Partial payment of {{currency}} {{paidAmount}} received for invoice {{invoiceNumber}}. "
                "Balance: {{currency}} {{balanceAmount}}."
            )
        ),
    },
    "invoice_overdue": {
        "email": DefaultTemplate(
            subject="OVERDUE: Invoice {{invoiceNumber}}",
            body=(
                "Dear {{customerName}},\n\n"
                "Invoice {{invoiceNumber}} is now OVERDUE.\n\n"
                "Amount Due: {{currency}} {{balanceAmount}}\n"
                "Original Due Date: {{dueDate}}\n\n"
                "Please pay immediately to avoid further action." + _SIGNATURE
            ),
        ),
        "message": DefaultTemplate(
            body=(
                "URGENT: Invoice {{invoiceNumber}} is overdue. Balance: {{currency}} {{balanceAmount}}. "
                "Please pay immediately."
            )
        ),
    },
    "invoice_cancelled": {
        "email": DefaultTemplate(
            subject="Invoice {{invoiceNumber}} Cancelled",
            body=(
                "Dear {{customerName}},\n\n"
                "Invoice {{invoiceNumber}} has been cancelled.\n\n"
                "Original Amount: {{currency}} {{totalAmount}}\n\n"
                "If you have any questions, please contact us." + _SIGNATURE
            ),
        ),
        "message": DefaultTemplate(
            body="Invoice {{invoiceNumber}} has been cancelled. Original amount: {{currency}} {{totalAmount}}."
        ),
    },
    CUSTOM_EVENT: {
        "email": DefaultTemplate(subject="Message from {{tenantName}}", body="{{customMessage}}"),
        "message": DefaultTemplate(body="{{customMessage}}"),
    },
}


def default_template(code: str, channel: str) -> DefaultTemplate:
    """Compiled-in template for ``code``; unknown codes use ``custom``."""

    variants = DEFAULT_TEMPLATES.get(code) or DEFAULT_TEMPLATES[CUSTOM_EVENT]
    if channel == Channel.EMAIL:
        return variants["email"]
    return variants["message"]


class TemplateSource(Protocol):
    async def find_template_candidates(
        self,
        *,
        tenant_ids: Sequence[str],
        code: str,
        channel: str,
        languages: Sequence[str],
    ) -> list[NotificationTemplate]: ...


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    subject: str | None
    body: str
    template_id: str | None
    from_default: bool


class TemplateResolver:
    """Finds the most specific active template for a tenant/code/channel/language."""

    def __init__(self, source: TemplateSource) -> None:
        self._source = source

    async def resolve(
        self,
        tenant_id: str,
        code: str,
        channel: str,
        language: str = FALLBACK_LANGUAGE,
    ) -> NotificationTemplate | None:
        languages = [language] if language == FALLBACK_LANGUAGE else [language, FALLBACK_LANGUAGE]
        tenant_ids = [tenant_id] if tenant_id == GLOBAL_TENANT_ID else [tenant_id, GLOBAL_TENANT_ID]
        candidates = await self._source.find_template_candidates(
            tenant_ids=tenant_ids,
            code=code,
            channel=channel,
            languages=languages,
        )
        by_key = {
            (candidate.tenant_id, candidate.language): candidate
            for candidate in candidates
            if candidate.is_active
        }
        for scope in tenant_ids:
            for candidate_language in languages:
                match = by_key.get((scope, candidate_language))
                if match is not None:
                    return match
        return None

    async def render(
        self,
        *,
        tenant_id: str,
        code: str,
        channel: str,
        language: str,
        variables: Mapping[str, Any],
    ) -> RenderedMessage:
        """Resolve and render; falls back to ``DEFAULT_TEMPLATES`` keyed by template code."""

        template = await self.resolve(tenant_id, code, channel, language)
        if template is not None:
            subject_source, body_source, template_id = template.subject, template.body, template.id
        else:
            fallback = default_template(code, channel)
            subject_source, body_source, template_id = fallback.subject, fallback.body, None

        subject = None
        if channel == Channel.EMAIL and subject_source:
            subject = render_template(subject_source, variables)
        return RenderedMessage(
            subject=subject,
            body=render_template(body_source, variables),
            template_id=template_id,
            from_default=template is None,
        )
