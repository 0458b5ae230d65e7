"""Billing module adapter: invoice and payment events."""

from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from .models import Channel
from .registry import ModuleAdapter
from .templates import CUSTOM_EVENT

_CENTS = Decimal("0.01")

# Domain event names published by billing and scheduling code.
EVENT_TEMPLATE_CODES: Mapping[str, str] = {
    "INVOICE_CREATED": "invoice_created",
    "INVOICE_ISSUED": "invoice_issued",
    "PAYMENT_REMINDER": "payment_reminder",
    "PAYMENT_RECEIVED": "payment_received",
    "PAYMENT_PARTIAL": "payment_partial",
    "INVOICE_OVERDUE": "invoice_overdue",
    "INVOICE_CANCELLED": "invoice_cancelled",
    "APPOINTMENT_CREATED": CUSTOM_EVENT,
    "APPOINTMENT_REMINDER": CUSTOM_EVENT,
    "APPOINTMENT_CANCELLED": CUSTOM_EVENT,
    "ORDER_CREATED": CUSTOM_EVENT,
    "ORDER_UPDATED": CUSTOM_EVENT,
    "ORDER_COMPLETED": CUSTOM_EVENT,
    "DELIVERY_SCHEDULED": CUSTOM_EVENT,
    "DELIVERY_COMPLETED": CUSTOM_EVENT,
    "CUSTOM": CUSTOM_EVENT,
}

_URGENT_CODES = frozenset({"invoice_overdue", "payment_reminder"})


class InvoiceSnapshot(BaseModel):
    invoice_number: str = Field(alias="invoiceNumber")
    total_amount: Decimal = Field(default=Decimal("0"), alias="totalAmount")
    paid_amount: Decimal = Field(default=Decimal("0"), alias="paidAmount")
    tax_amount: Decimal = Field(default=Decimal("0"), alias="taxAmount")
    currency: str | None = None
    due_date: date | datetime | None = Field(default=None, alias="dueDate")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CustomerSnapshot(BaseModel):
    name: str = ""

    model_config = ConfigDict(extra="ignore")


def _money(value: Decimal) -> str:
    return str(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


def _due_date(value: date | datetime | None) -> str:
    if value is None:
        return "N/A"
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


class InvoiceNotificationAdapter(ModuleAdapter):
    module_name = "billing"

    def map_event_to_template_code(self, event_type: str) -> str:
        if event_type in EVENT_TEMPLATE_CODES:
            return EVENT_TEMPLATE_CODES[event_type]
        return event_type.strip().lower() or CUSTOM_EVENT

    def build_variables(self, data: Mapping[str, Any]) -> dict[str, str]:
        invoice = InvoiceSnapshot.model_validate(data.get("invoice") or {})
        customer = CustomerSnapshot.model_validate(data.get("customer") or {})
        variables = {
            "customerName": customer.name,
            "invoiceNumber": invoice.invoice_number,
            "dueDate": _due_date(invoice.due_date),
            "totalAmount": _money(invoice.total_amount),
            "currency": invoice.currency or "USD",
            "taxAmount": _money(invoice.tax_amount),
            "paidAmount": _money(invoice.paid_amount),
            "balanceAmount": _money(invoice.total_amount - invoice.paid_amount),
        }
        message = data.get("customMessage")
        if message:
            variables["customMessage"] = str(message)
        return variables

    def default_channels(self, event_type: str) -> list[Channel]:
        if self.map_event_to_template_code(event_type) in _URGENT_CODES:
            return [Channel.EMAIL, Channel.WHATSAPP]
        return [Channel.EMAIL]
