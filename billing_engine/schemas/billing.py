from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

# ── Provider Event ───────────────────────────────────────


class ProviderEvent(BaseModel):
    """Inbound event envelope as delivered by a payment provider."""

    model_config = ConfigDict(populate_by_name=True)
    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=100)
    source: str = Field(default="stripe", max_length=50)
    data: dict = Field(default_factory=dict)


class IngestResult(BaseModel):
    event_id: str
    status: Literal["accepted", "duplicate", "malformed"]
    outcome: str | None = None
    detail: str | None = None


# ── Webhook Event ────────────────────────────────────────


class WebhookEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    event_id: str
    event_type: str
    source: str
    payload: dict
    status: str
    processed: bool
    processed_at: datetime | None = None
    error_message: str | None = None
    retry_count: int
    created_at: datetime
    updated_at: datetime


# ── Ledger reads ─────────────────────────────────────────


class LineItem(BaseModel):
    metric_name: str
    quantity: Decimal
    unit_price: Decimal | None = None
    amount: Decimal
    period_start: datetime
    period_end: datetime


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True, use_enum_values=True)
    id: UUID
    tenant_id: UUID
    subscription_id: UUID | None = None
    invoice_number: str
    external_id: str | None = None
    amount_due: Decimal
    amount_paid: Decimal
    amount_remaining: Decimal
    currency: str
    status: str
    due_date: datetime | None = None
    paid_at: datetime | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    line_items: list | None = None
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime
    updated_at: datetime


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    tenant_id: UUID
    plan_id: UUID
    external_id: str | None = None
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool
    cancelled_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    tenant_id: UUID
    subscription_id: UUID | None = None
    invoice_id: UUID | None = None
    external_id: str | None = None
    amount: Decimal
    currency: str
    status: str
    refunded_amount: Decimal
    failure_reason: str | None = None


class TenantBalance(BaseModel):
    tenant_id: UUID
    outstanding: Decimal
    open_invoices: int


# ── Usage ────────────────────────────────────────────────


class UsageRecordCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    tenant_id: UUID
    subscription_id: UUID | None = None
    metric_name: str = Field(min_length=1, max_length=100)
    quantity: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    unit_price: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=4)
    timestamp: datetime
    metadata_: dict | None = Field(default=None, alias="metadata")


class UsageRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    tenant_id: UUID
    subscription_id: UUID | None = None
    metric_name: str
    quantity: Decimal
    unit_price: Decimal | None = None
    timestamp: datetime
    created_at: datetime
