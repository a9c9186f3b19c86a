from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from billing_engine.errors import (
    InvalidTransition,
    InvariantViolation,
    OverpaymentRejected,
    PermanentApplyError,
    RefundExceedsPayment,
)
from billing_engine.models.billing import InvoiceStatus, PaymentStatus
from billing_engine.services.billing.reconciliation import InvoiceReconciler
from billing_engine.services.common import as_utc


@pytest.fixture()
def reconciler():
    return InvoiceReconciler(allow_overpayment=False, due_days=30)


def test_full_payment_marks_invoice_paid(db_session, reconciler, invoice, make_payment):
    payment = make_payment("99.99")
    applied = reconciler.apply_payment(invoice, payment)
    db_session.commit()

    assert applied == Decimal("99.99")
    assert invoice.status == InvoiceStatus.paid
    assert invoice.amount_paid == Decimal("99.99")
    assert invoice.amount_remaining == Decimal("0.00")
    assert invoice.paid_at is not None
    assert payment.invoice_id == invoice.id


def test_replayed_payment_is_not_applied_twice(db_session, reconciler, make_invoice, make_payment):
    invoice = make_invoice("100.00")
    payment = make_payment("40.00")
    reconciler.apply_payment(invoice, payment)
    db_session.commit()

    assert reconciler.apply_payment(invoice, payment) == Decimal("0.00")
    assert invoice.amount_paid == Decimal("40.00")
    assert invoice.amount_remaining == Decimal("60.00")
    assert invoice.status == InvoiceStatus.open


def test_partial_payment_opens_draft(db_session, reconciler, make_invoice, make_payment):
    invoice = make_invoice("100.00", status=InvoiceStatus.draft)
    reconciler.apply_payment(invoice, make_payment("25.00"))
    assert invoice.status == InvoiceStatus.open
    assert invoice.amount_remaining == Decimal("75.00")


def test_overpayment_rejected_by_default(reconciler, make_invoice, make_payment):
    invoice = make_invoice("50.00")
    with pytest.raises(OverpaymentRejected):
        reconciler.apply_payment(invoice, make_payment("60.00"))
    assert invoice.amount_paid == Decimal("0.00")


def test_overpayment_recorded_as_credit_when_allowed(make_invoice, make_payment):
    reconciler = InvoiceReconciler(allow_overpayment=True)
    invoice = make_invoice("99.99")
    applied = reconciler.apply_payment(invoice, make_payment("120.00"))

    assert applied == Decimal("99.99")
    assert invoice.status == InvoiceStatus.paid
    assert invoice.amount_remaining == Decimal("0.00")
    assert invoice.metadata_["credit_balance"] == "20.01"


def test_only_succeeded_payments_apply(reconciler, invoice, make_payment):
    with pytest.raises(PermanentApplyError):
        reconciler.apply_payment(invoice, make_payment(status=PaymentStatus.failed))


def test_payment_on_void_invoice_rejected(reconciler, make_invoice, make_payment):
    invoice = make_invoice(status=InvoiceStatus.void)
    with pytest.raises(InvalidTransition):
        reconciler.apply_payment(invoice, make_payment())


def test_partial_refund_reopens_paid_invoice(db_session, reconciler, invoice, make_payment):
    payment = make_payment("99.99")
    reconciler.apply_payment(invoice, payment)
    db_session.commit()

    reduced = reconciler.apply_refund(invoice, payment, Decimal("49.99"), "re_1")
    db_session.commit()

    assert reduced == Decimal("49.99")
    assert invoice.status == InvoiceStatus.open
    assert invoice.amount_paid == Decimal("50.00")
    assert invoice.amount_remaining == Decimal("49.99")
    assert invoice.paid_at is None
    assert payment.refunded_amount == Decimal("49.99")
    assert payment.status == PaymentStatus.succeeded


def test_refund_with_same_reference_is_ignored(db_session, reconciler, invoice, make_payment):
    payment = make_payment("99.99")
    reconciler.apply_payment(invoice, payment)
    reconciler.apply_refund(invoice, payment, Decimal("10.00"), "re_dup")
    assert reconciler.apply_refund(invoice, payment, Decimal("10.00"), "re_dup") == Decimal("0.00")
    assert payment.refunded_amount == Decimal("10.00")
    assert invoice.amount_paid == Decimal("89.99")


def test_full_refund_marks_payment_refunded(reconciler, invoice, make_payment):
    payment = make_payment("99.99")
    reconciler.apply_payment(invoice, payment)
    reconciler.apply_refund(invoice, payment, Decimal("99.99"), "re_full")
    assert payment.status == PaymentStatus.refunded
    assert invoice.amount_paid == Decimal("0.00")
    assert invoice.amount_remaining == Decimal("99.99")
    assert invoice.status == InvoiceStatus.open


def test_refund_exceeding_payment_rejected(reconciler, invoice, make_payment):
    payment = make_payment("99.99")
    reconciler.apply_payment(invoice, payment)
    reconciler.apply_refund(invoice, payment, Decimal("60.00"), "re_a")
    with pytest.raises(RefundExceedsPayment):
        reconciler.apply_refund(invoice, payment, Decimal("40.00"), "re_b")
    assert payment.refunded_amount == Decimal("60.00")


def test_refund_without_invoice_only_touches_payment(reconciler, make_payment):
    payment = make_payment("30.00")
    assert reconciler.apply_refund(None, payment, Decimal("5.00")) == Decimal("5.00")
    assert payment.refunded_amount == Decimal("5.00")


def test_refund_of_unapplied_payment_leaves_invoice_paid(db_session, reconciler, invoice, make_payment):
    linked = make_payment("40.00", invoice_id=invoice.id)
    payment = make_payment("99.99")
    reconciler.apply_payment(invoice, payment)
    db_session.commit()

    assert reconciler.apply_refund(invoice, linked, Decimal("40.00"), "re_other") == Decimal("0.00")
    db_session.commit()

    assert invoice.status == InvoiceStatus.paid
    assert invoice.amount_paid == Decimal("99.99")
    assert invoice.amount_remaining == Decimal("0.00")
    assert linked.refunded_amount == Decimal("40.00")
    assert linked.status == PaymentStatus.refunded


def test_check_invariants_detects_inconsistent_invoice():
    broken = SimpleNamespace(
        invoice_number="INV-X",
        tenant_id="t",
        amount_due=Decimal("100.00"),
        amount_paid=Decimal("100.00"),
        amount_remaining=Decimal("0.00"),
        status=InvoiceStatus.open,
    )
    with pytest.raises(InvariantViolation) as exc:
        InvoiceReconciler.check_invariants(broken)
    assert any("nothing remaining" in problem for problem in exc.value.details)


def test_check_invariants_detects_stale_remaining():
    broken = SimpleNamespace(
        invoice_number="INV-Y",
        tenant_id="t",
        amount_due=Decimal("100.00"),
        amount_paid=Decimal("20.00"),
        amount_remaining=Decimal("100.00"),
        status=InvoiceStatus.open,
    )
    with pytest.raises(InvariantViolation):
        InvoiceReconciler.check_invariants(broken)


def test_finalize_draft_sets_due_date(reconciler, make_invoice):
    invoice = make_invoice("40.00", status=InvoiceStatus.draft)
    now = datetime(2026, 1, 10, tzinfo=UTC)
    assert reconciler.finalize(invoice, now) is True
    assert invoice.status == InvoiceStatus.open
    assert as_utc(invoice.due_date) == now + timedelta(days=30)


def test_finalize_zero_amount_marks_paid(reconciler, make_invoice):
    invoice = make_invoice("0.00", status=InvoiceStatus.draft)
    reconciler.finalize(invoice)
    assert invoice.status == InvoiceStatus.paid
    assert invoice.paid_at is not None


def test_finalize_is_idempotent_for_open(reconciler, make_invoice):
    assert reconciler.finalize(make_invoice(status=InvoiceStatus.open)) is False


def test_finalize_paid_invoice_rejected(reconciler, make_invoice):
    with pytest.raises(InvalidTransition):
        reconciler.finalize(make_invoice("0.00", status=InvoiceStatus.paid))


def test_void_open_invoice(reconciler, make_invoice):
    invoice = make_invoice()
    assert reconciler.void(invoice) is True
    assert invoice.status == InvoiceStatus.void
    assert reconciler.void(invoice) is False


def test_void_paid_invoice_rejected(reconciler, invoice, make_payment):
    reconciler.apply_payment(invoice, make_payment("99.99"))
    with pytest.raises(InvalidTransition):
        reconciler.void(invoice)


def test_mark_uncollectible_requires_past_due_date(reconciler, make_invoice):
    now = datetime(2026, 3, 1, tzinfo=UTC)
    overdue = make_invoice(due_date=now - timedelta(days=1))
    assert reconciler.mark_uncollectible(overdue, now) is True
    assert overdue.status == InvoiceStatus.uncollectible
    assert reconciler.mark_uncollectible(overdue, now) is False

    not_due = make_invoice(due_date=now + timedelta(days=1))
    with pytest.raises(PermanentApplyError):
        reconciler.mark_uncollectible(not_due, now)


def test_mark_uncollectible_on_draft_rejected(reconciler, make_invoice):
    with pytest.raises(InvalidTransition):
        reconciler.mark_uncollectible(make_invoice(status=InvoiceStatus.draft))


def test_outstanding_balance_excludes_void(db_session, tenant, make_invoice):
    make_invoice("10.00")
    make_invoice("15.50")
    make_invoice("100.00", status=InvoiceStatus.void)

    balance = InvoiceReconciler.outstanding_balance(db_session, tenant.id)
    assert balance.outstanding == Decimal("25.50")
    assert balance.open_invoices == 2
