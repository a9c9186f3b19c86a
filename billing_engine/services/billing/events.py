"""Typed actions parsed from provider event payloads."""
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from billing_engine.errors import MalformedEvent


class Action(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    # Either reference locates the owning tenant.
    customer: str | None = None
    tenant_id: UUID | None = None


# ── Payments ─────────────────────────────────────────────


class PaymentSucceeded(Action):
    id: str = Field(min_length=1)
    amount: Decimal = Field(ge=0, validation_alias=AliasChoices("amount", "amount_received"))
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    subscription: str | None = None
    invoice: str | None = None
    payment_method: str | None = None
    charge: str | None = Field(default=None, validation_alias=AliasChoices("charge", "latest_charge"))


class PaymentFailed(Action):
    id: str = Field(min_length=1)
    amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    subscription: str | None = None
    invoice: str | None = None
    payment_method: str | None = None
    failure_reason: str | None = Field(
        default=None,
        validation_alias=AliasChoices("failure_reason", "failure_message"),
    )


class RefundIssued(Action):
    payment: str = Field(min_length=1, validation_alias=AliasChoices("payment", "payment_intent"))
    amount: Decimal = Field(gt=0)
    refund: str | None = None


# ── Invoices ─────────────────────────────────────────────


class InvoiceFinalized(Action):
    id: str = Field(min_length=1)
    amount_due: Decimal = Field(ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    number: str | None = None
    subscription: str | None = None
    due_date: datetime | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


class InvoiceVoided(Action):
    id: str = Field(min_length=1)


class DunningExhausted(Action):
    id: str = Field(min_length=1)


# ── Subscriptions ────────────────────────────────────────


class SubscriptionCreated(Action):
    id: str = Field(min_length=1)
    plan: str = Field(min_length=1, validation_alias=AliasChoices("plan", "price"))
    trial_end: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    metered: bool = False


class SubscriptionUpdated(Action):
    id: str = Field(min_length=1)
    cancel_at_period_end: bool | None = None


class SubscriptionCancelled(Action):
    id: str = Field(min_length=1)
    cancelled_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("cancelled_at", "canceled_at")
    )


class SubscriptionPaused(Action):
    id: str = Field(min_length=1)


class SubscriptionResumed(Action):
    id: str = Field(min_length=1)


class TrialEnded(Action):
    id: str = Field(min_length=1)


class PeriodRollover(Action):
    id: str = Field(min_length=1)
    period_end: datetime | None = Field(
        default=None, validation_alias=AliasChoices("period_end", "current_period_end")
    )


# ── Usage ────────────────────────────────────────────────


class UsageReported(Action):
    subscription: str | None = None
    metric_name: str = Field(min_length=1, max_length=100)
    quantity: Decimal = Field(ge=0)
    unit_price: Decimal | None = Field(default=None, ge=0)
    timestamp: datetime


def _invoice_payment(obj: dict) -> dict:
    """Invoice-shaped payment events carry the payment intent as a field."""
    data = dict(obj)
    invoice_id = data.get("id")
    data["invoice"] = invoice_id
    data["id"] = data.get("payment_intent") or f"{invoice_id}:payment"
    if "amount" not in data:
        data["amount"] = data.get("amount_paid", data.get("amount_due"))
    return data


EVENT_TYPES: dict[str, tuple[type[Action], Callable[[dict], dict] | None]] = {
    "payment_intent.succeeded": (PaymentSucceeded, None),
    "invoice.payment_succeeded": (PaymentSucceeded, _invoice_payment),
    "payment_intent.payment_failed": (PaymentFailed, None),
    "invoice.payment_failed": (PaymentFailed, _invoice_payment),
    "charge.refunded": (RefundIssued, None),
    "invoice.finalized": (InvoiceFinalized, None),
    "invoice.voided": (InvoiceVoided, None),
    "invoice.marked_uncollectible": (DunningExhausted, None),
    "customer.subscription.created": (SubscriptionCreated, None),
    "customer.subscription.updated": (SubscriptionUpdated, None),
    "customer.subscription.deleted": (SubscriptionCancelled, None),
    "customer.subscription.paused": (SubscriptionPaused, None),
    "customer.subscription.resumed": (SubscriptionResumed, None),
    "customer.subscription.trial_ended": (TrialEnded, None),
    "subscription.period_ended": (PeriodRollover, None),
    "usage.reported": (UsageReported, None),
}


def parse_event(event_type: str, data: dict | None) -> Action | None:
    """Parse a stored payload. Unknown event types return None."""
    entry = EVENT_TYPES.get(event_type)
    if entry is None:
        return None
    model, reshape = entry
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedEvent(f"{event_type} payload has no data.object")
    if reshape is not None:
        obj = reshape(obj)
    try:
        return model.model_validate(obj)
    except ValidationError as exc:
        raise MalformedEvent(
            f"{event_type} payload is invalid", details=str(exc)
        ) from exc
