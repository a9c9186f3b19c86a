"""Invoice reconciliation: keeps paid/remaining/status consistent with payments."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from billing_engine.config import settings
from billing_engine.errors import (
    InvalidTransition,
    InvariantViolation,
    OverpaymentRejected,
    PermanentApplyError,
    RefundExceedsPayment,
)
from billing_engine.models.billing import Invoice, InvoiceStatus, Payment, PaymentStatus
from billing_engine.schemas.billing import TenantBalance
from billing_engine.services.billing.ledger import LedgerStore
from billing_engine.services.common import as_utc, to_money, utcnow

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class InvoiceReconciler:
    def __init__(
        self, allow_overpayment: bool | None = None, due_days: int | None = None
    ) -> None:
        self.allow_overpayment = (
            settings.allow_overpayment if allow_overpayment is None else allow_overpayment
        )
        self.due_days = settings.invoice_due_days if due_days is None else due_days

    # ── Derived balance ──────────────────────────────────

    @staticmethod
    def recompute(invoice: Invoice) -> Decimal:
        invoice.amount_due = to_money(invoice.amount_due)
        invoice.amount_paid = to_money(invoice.amount_paid)
        invoice.amount_remaining = invoice.amount_due - invoice.amount_paid
        return invoice.amount_remaining

    @staticmethod
    def check_invariants(invoice: Invoice) -> None:
        due = to_money(invoice.amount_due)
        paid = to_money(invoice.amount_paid)
        remaining = to_money(invoice.amount_remaining)
        problems = []
        if remaining != due - paid:
            problems.append(f"remaining {remaining} != due {due} - paid {paid}")
        if remaining < ZERO:
            problems.append(f"remaining {remaining} is negative")
        if paid < ZERO:
            problems.append(f"paid {paid} is negative")
        if invoice.status == InvoiceStatus.paid and remaining != ZERO:
            problems.append(f"status paid with remaining {remaining}")
        if (
            invoice.status in (InvoiceStatus.draft, InvoiceStatus.open)
            and paid > ZERO
            and remaining == ZERO
        ):
            problems.append(f"status {InvoiceStatus(invoice.status).value} with nothing remaining")
        if problems:
            logger.error(
                "Invoice %s failed invariants: %s",
                invoice.invoice_number,
                "; ".join(problems),
                extra={"tenant_id": str(invoice.tenant_id)},
            )
            raise InvariantViolation(
                f"Invoice {invoice.invoice_number} is inconsistent",
                details=problems,
            )

    def _commit_changes(self, invoice: Invoice, *others) -> None:
        self.recompute(invoice)
        self.check_invariants(invoice)
        LedgerStore.touch(invoice, *others)

    # ── Payments ─────────────────────────────────────────

    def apply_payment(self, invoice: Invoice, payment: Payment) -> Decimal:
        """Apply a succeeded payment. Returns the amount applied (0 for a replay)."""
        if payment.status != PaymentStatus.succeeded:
            raise PermanentApplyError(
                f"Payment {payment.external_id or payment.id} is "
                f"{PaymentStatus(payment.status).value}; only succeeded payments apply"
            )
        metadata = dict(invoice.metadata_ or {})
        applied = dict(metadata.get("applied_payments") or {})
        key = str(payment.id)
        if key in applied:
            logger.info(
                "Payment %s already applied to invoice %s",
                payment.external_id or payment.id,
                invoice.invoice_number,
            )
            return ZERO
        if invoice.status == InvoiceStatus.void:
            raise InvalidTransition("invoice", InvoiceStatus.void.value, InvoiceStatus.paid.value)

        amount = to_money(payment.amount)
        remaining = self.recompute(invoice)
        to_apply = amount
        if amount > remaining:
            if not self.allow_overpayment:
                raise OverpaymentRejected(
                    f"Payment of {amount} exceeds remaining {remaining} "
                    f"on invoice {invoice.invoice_number}",
                    details={"amount": str(amount), "remaining": str(remaining)},
                )
            to_apply = remaining
            excess = amount - remaining
            credit = to_money(metadata.get("credit_balance")) + excess
            metadata["credit_balance"] = str(credit)
            logger.info(
                "Recorded credit of %s on invoice %s",
                excess,
                invoice.invoice_number,
                extra={"tenant_id": str(invoice.tenant_id)},
            )

        invoice.amount_paid = to_money(invoice.amount_paid) + to_apply
        applied[key] = str(to_apply)
        metadata["applied_payments"] = applied
        invoice.metadata_ = metadata
        payment.invoice_id = invoice.id

        if self.recompute(invoice) == ZERO:
            invoice.status = InvoiceStatus.paid
            invoice.paid_at = utcnow()
        elif invoice.status == InvoiceStatus.draft:
            invoice.status = InvoiceStatus.open
        self._commit_changes(invoice, payment)
        logger.info(
            "Applied %s to invoice %s (remaining %s, status %s)",
            to_apply,
            invoice.invoice_number,
            invoice.amount_remaining,
            InvoiceStatus(invoice.status).value,
            extra={"tenant_id": str(invoice.tenant_id)},
        )
        return to_apply

    def apply_refund(
        self,
        invoice: Invoice | None,
        payment: Payment,
        amount: Decimal,
        refund_ref: str | None = None,
    ) -> Decimal:
        """Refund part of a payment and reverse it on the invoice it paid."""
        amount = to_money(amount)
        if amount <= ZERO:
            raise PermanentApplyError(f"Refund amount must be positive, got {amount}")
        payment_meta = dict(payment.metadata_ or {})
        refunds = dict(payment_meta.get("refunds") or {})
        if refund_ref and refund_ref in refunds:
            logger.info("Refund %s already recorded", refund_ref)
            return ZERO
        refunded = to_money(payment.refunded_amount)
        total = to_money(payment.amount)
        if refunded + amount > total:
            raise RefundExceedsPayment(
                f"Refund of {amount} exceeds refundable {total - refunded} "
                f"on payment {payment.external_id or payment.id}",
                details={"amount": str(amount), "refundable": str(total - refunded)},
            )
        payment.refunded_amount = refunded + amount
        if payment.refunded_amount == total:
            payment.status = PaymentStatus.refunded
        refunds[refund_ref or f"refund-{len(refunds) + 1}"] = str(amount)
        payment_meta["refunds"] = refunds
        payment.metadata_ = payment_meta

        if invoice is None:
            LedgerStore.touch(payment)
            return amount

        metadata = dict(invoice.metadata_ or {})
        key = str(payment.id)
        applied = dict(metadata.get("applied_payments") or {})
        reversed_ = dict(metadata.get("refunded_payments") or {})
        applied_from_payment = to_money(applied[key]) if key in applied else ZERO
        reversible = applied_from_payment - to_money(reversed_.get(key))
        reduce_by = min(amount, max(reversible, ZERO))
        invoice.amount_paid = to_money(invoice.amount_paid) - reduce_by
        reversed_[key] = str(to_money(reversed_.get(key)) + reduce_by)
        metadata["refunded_payments"] = reversed_
        invoice.metadata_ = metadata

        if self.recompute(invoice) > ZERO and invoice.status == InvoiceStatus.paid:
            invoice.status = InvoiceStatus.open
            invoice.paid_at = None
        self._commit_changes(invoice, payment)
        logger.info(
            "Refunded %s against invoice %s (remaining %s, status %s)",
            reduce_by,
            invoice.invoice_number,
            invoice.amount_remaining,
            InvoiceStatus(invoice.status).value,
            extra={"tenant_id": str(invoice.tenant_id)},
        )
        return reduce_by

    # ── Status transitions ───────────────────────────────

    def finalize(self, invoice: Invoice, now: datetime | None = None) -> bool:
        if invoice.status == InvoiceStatus.open:
            return False
        if invoice.status != InvoiceStatus.draft:
            raise InvalidTransition(
                "invoice", InvoiceStatus(invoice.status).value, InvoiceStatus.open.value
            )
        now = now or utcnow()
        if invoice.due_date is None:
            invoice.due_date = now + timedelta(days=self.due_days)
        if self.recompute(invoice) == ZERO:
            invoice.status = InvoiceStatus.paid
            invoice.paid_at = now
        else:
            invoice.status = InvoiceStatus.open
        self._commit_changes(invoice)
        logger.info(
            "Finalized invoice %s",
            invoice.invoice_number,
            extra={"tenant_id": str(invoice.tenant_id)},
        )
        return True

    def void(self, invoice: Invoice) -> bool:
        if invoice.status == InvoiceStatus.void:
            return False
        if invoice.status == InvoiceStatus.paid:
            raise InvalidTransition("invoice", InvoiceStatus.paid.value, InvoiceStatus.void.value)
        invoice.status = InvoiceStatus.void
        self._commit_changes(invoice)
        logger.info(
            "Voided invoice %s",
            invoice.invoice_number,
            extra={"tenant_id": str(invoice.tenant_id)},
        )
        return True

    def mark_uncollectible(self, invoice: Invoice, now: datetime | None = None) -> bool:
        """Dunning exhausted. The decision is made outside the engine."""
        if invoice.status == InvoiceStatus.uncollectible:
            return False
        if invoice.status != InvoiceStatus.open:
            raise InvalidTransition(
                "invoice",
                InvoiceStatus(invoice.status).value,
                InvoiceStatus.uncollectible.value,
            )
        now = now or utcnow()
        due_date = as_utc(invoice.due_date)
        if due_date is None or due_date >= now:
            raise PermanentApplyError(
                f"Invoice {invoice.invoice_number} is not past its due date"
            )
        if self.recompute(invoice) <= ZERO:
            raise PermanentApplyError(
                f"Invoice {invoice.invoice_number} has nothing remaining"
            )
        invoice.status = InvoiceStatus.uncollectible
        self._commit_changes(invoice)
        logger.info(
            "Invoice %s marked uncollectible",
            invoice.invoice_number,
            extra={"tenant_id": str(invoice.tenant_id)},
        )
        return True

    # ── Aggregates ───────────────────────────────────────

    @staticmethod
    def outstanding_balance(db: Session, tenant_id: UUID) -> TenantBalance:
        outstanding = db.scalar(
            select(func.coalesce(func.sum(Invoice.amount_remaining), 0)).where(
                Invoice.tenant_id == tenant_id,
                Invoice.status != InvoiceStatus.void,
            )
        )
        open_count = db.scalar(
            select(func.count(Invoice.id)).where(
                Invoice.tenant_id == tenant_id,
                Invoice.status == InvoiceStatus.open,
            )
        )
        return TenantBalance(
            tenant_id=tenant_id,
            outstanding=to_money(outstanding),
            open_invoices=open_count or 0,
        )


reconciler = InvoiceReconciler()
