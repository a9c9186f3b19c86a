"""Idempotent event processor.

Turns each stored provider event into exactly one net effect on the ledger:

1. ``ingest`` appends the event; a duplicate id short-circuits.
2. The payload is parsed into a typed action. Unknown types are ignored,
   unparseable payloads are quarantined.
3. The action is applied inside a tenant-scoped unit of work together with
   the event's processed mark, so a crash at any point is safe to replay.
4. Transient store errors are retried in-call with backoff, then left for
   the sweep with ``retry_count`` incremented.
5. Notifications and invoice documents go out after commit and never fail
   the event.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from billing_engine.config import settings
from billing_engine.errors import (
    DuplicateEvent,
    EntityNotFound,
    InvariantViolation,
    MalformedEvent,
    OverpaymentRejected,
    PeriodAlreadyInvoiced,
    PermanentApplyError,
    TransientStoreError,
)
from billing_engine.metrics import EVENT_APPLY_LATENCY, EVENTS_INGESTED, EVENTS_PROCESSED
from billing_engine.models.billing import (
    Invoice,
    Payment,
    PaymentStatus,
    Subscription,
    WebhookEvent,
)
from billing_engine.models.tenant import SubscriptionPlan, Tenant
from billing_engine.schemas.billing import IngestResult, ProviderEvent
from billing_engine.services.billing import events as ev
from billing_engine.services.billing.documents import (
    InvoiceDocumentStore,
    build_invoice_document,
    get_document_store,
)
from billing_engine.services.billing.event_store import ProcessingOutcome, event_store
from billing_engine.services.billing.ledger import LedgerStore
from billing_engine.services.billing.lifecycle import SubscriptionLifecycle
from billing_engine.services.billing.reconciliation import InvoiceReconciler
from billing_engine.services.billing.usage import usage_aggregator
from billing_engine.services.common import to_money
from billing_engine.services.notifier import NotifierGateway, build_notifier

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    outcome: ProcessingOutcome = ProcessingOutcome.processed
    tenant_id: UUID | None = None
    recipient: str | None = None
    subject: str | None = None
    body: str | None = None
    documents: list[dict] = field(default_factory=list)
    skipped: bool = False


class EventProcessor:
    def __init__(
        self,
        db: Session,
        notifier: NotifierGateway | None = None,
        documents: InvoiceDocumentStore | None = None,
        reconciler: InvoiceReconciler | None = None,
        lifecycle: SubscriptionLifecycle | None = None,
    ) -> None:
        self.db = db
        self.ledger = LedgerStore(db)
        self.notifier = notifier or build_notifier(db)
        self.documents = documents or get_document_store()
        self.reconciler = reconciler or InvoiceReconciler()
        self.lifecycle = lifecycle or SubscriptionLifecycle()
        self._handlers: dict[type[ev.Action], Callable[..., ApplyResult]] = {
            ev.PaymentSucceeded: self._payment_succeeded,
            ev.PaymentFailed: self._payment_failed,
            ev.RefundIssued: self._refund_issued,
            ev.InvoiceFinalized: self._invoice_finalized,
            ev.InvoiceVoided: self._invoice_voided,
            ev.DunningExhausted: self._dunning_exhausted,
            ev.SubscriptionCreated: self._subscription_created,
            ev.SubscriptionUpdated: self._subscription_updated,
            ev.SubscriptionCancelled: self._subscription_cancelled,
            ev.SubscriptionPaused: self._subscription_paused,
            ev.SubscriptionResumed: self._subscription_resumed,
            ev.TrialEnded: self._trial_ended,
            ev.PeriodRollover: self._period_rollover,
            ev.UsageReported: self._usage_reported,
        }

    # ── Entry points ─────────────────────────────────────

    def ingest(self, event: ProviderEvent) -> IngestResult:
        try:
            item = event_store.append(self.db, event)
        except DuplicateEvent:
            logger.info(
                "Duplicate webhook event %s suppressed",
                event.id,
                extra={"event_id": event.id, "event_type": event.type},
            )
            EVENTS_INGESTED.labels(event.source, "duplicate").inc()
            return IngestResult(event_id=event.id, status="duplicate")

        outcome = self.process(item)
        if outcome == ProcessingOutcome.malformed:
            EVENTS_INGESTED.labels(event.source, "malformed").inc()
            return IngestResult(
                event_id=event.id,
                status="malformed",
                outcome=outcome.value,
                detail=item.error_message,
            )
        EVENTS_INGESTED.labels(event.source, "accepted").inc()
        return IngestResult(event_id=event.id, status="accepted", outcome=outcome.value)

    def process(self, item: WebhookEvent) -> ProcessingOutcome:
        """Apply one stored event. Safe to call again for the same event."""
        event_id = item.event_id
        event_type = item.event_type
        log_extra = {"event_id": event_id, "event_type": event_type}

        try:
            action = ev.parse_event(event_type, item.payload)
        except MalformedEvent as exc:
            error = f"{exc.message}: {exc.details}" if exc.details else exc.message
            logger.warning("Quarantined malformed event %s: %s", event_id, error, extra=log_extra)
            return self._record(item, ProcessingOutcome.malformed, error, event_type)
        if action is None:
            logger.info("Ignoring unsupported event type %s", event_type, extra=log_extra)
            return self._record(item, ProcessingOutcome.ignored, None, event_type)

        started = time.monotonic()
        try:
            result = self._apply_with_retry(item.id, event_id, action)
        except TransientStoreError as exc:
            logger.warning(
                "Event %s left unprocessed after store errors: %s",
                event_id,
                exc.message,
                extra=log_extra,
            )
            return self._record(item, ProcessingOutcome.transient_failure, exc.message, event_type)
        except (PermanentApplyError, InvariantViolation) as exc:
            logger.warning("Rejected event %s: %s", event_id, exc.message, extra=log_extra)
            return self._record(item, ProcessingOutcome.rejected, exc.message, event_type)
        except IntegrityError as exc:
            error = f"Conflicts with existing ledger data: {exc.orig}"
            logger.warning("Rejected event %s: %s", event_id, error, extra=log_extra)
            return self._record(item, ProcessingOutcome.rejected, error, event_type)
        except Exception as exc:
            logger.exception("Unexpected error applying event %s", event_id, extra=log_extra)
            return self._record(
                item, ProcessingOutcome.transient_failure, f"{type(exc).__name__}: {exc}", event_type
            )
        finally:
            EVENT_APPLY_LATENCY.labels(event_type).observe(time.monotonic() - started)

        if result.skipped:
            logger.info("Event %s already applied", event_id, extra=log_extra)
            return ProcessingOutcome.processed

        EVENTS_PROCESSED.labels(event_type, result.outcome.value).inc()
        logger.info(
            "Processed event %s",
            event_id,
            extra={**log_extra, "outcome": result.outcome.value, "tenant_id": str(result.tenant_id)},
        )
        self._dispatch_side_effects(result, log_extra)
        return result.outcome

    # ── Internals ────────────────────────────────────────

    def _record(
        self,
        item: WebhookEvent,
        outcome: ProcessingOutcome,
        error: str | None,
        event_type: str,
    ) -> ProcessingOutcome:
        EVENTS_PROCESSED.labels(event_type, outcome.value).inc()
        try:
            event_store.mark_processed(self.db, item, outcome, error)
        except TransientStoreError:
            # The row keeps its previous status and the sweep retries it.
            logger.error(
                "Could not record outcome %s for event %s",
                outcome.value,
                item.event_id,
                exc_info=True,
                extra={"event_id": item.event_id, "outcome": outcome.value},
            )
        return outcome

    def _apply_with_retry(self, item_id: UUID, event_id: str, action: ev.Action) -> ApplyResult:
        retrying = Retrying(
            stop=stop_after_attempt(max(settings.store_retry_attempts, 1)),
            wait=wait_exponential(
                multiplier=settings.retry_backoff_base_seconds,
                max=settings.retry_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientStoreError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._apply, item_id, event_id, action)

    def _apply(self, item_id: UUID, event_id: str, action: ev.Action) -> ApplyResult:
        with self.ledger.translate_errors():
            tenant_id = self._resolve_tenant(action)
        with self.ledger.unit_of_work(tenant_id) as tenant:
            locked = self.ledger.lock_event(item_id)
            if locked is None or locked.processed:
                return ApplyResult(tenant_id=tenant_id, skipped=True)
            handler = self._handlers[type(action)]
            result = handler(tenant, action, event_id)
            result.tenant_id = tenant.id
            result.recipient = result.recipient or tenant.email
            event_store.mark_processed(self.db, locked, result.outcome, commit=False)
        return result

    def _dispatch_side_effects(self, result: ApplyResult, log_extra: dict) -> None:
        if result.subject and result.tenant_id:
            try:
                status = self.notifier.notify(
                    result.tenant_id,
                    "email",
                    result.subject,
                    result.body or "",
                    recipient=result.recipient,
                )
            except Exception:
                logger.exception("Notifier raised for event %s", log_extra["event_id"], extra=log_extra)
            else:
                if status != "accepted":
                    logger.warning(
                        "Notification for event %s not accepted", log_extra["event_id"], extra=log_extra
                    )
        for document in result.documents:
            try:
                self.documents.submit(document)
            except Exception:
                logger.exception(
                    "Document store rejected invoice %s",
                    document.get("invoice_number"),
                    extra=log_extra,
                )

    # ── Reference resolution ─────────────────────────────

    def _resolve_tenant(self, action: ev.Action) -> UUID:
        if action.tenant_id is not None:
            return action.tenant_id
        if action.customer:
            tenant = self.ledger.get_tenant_by_customer_ref(action.customer)
            if tenant is None:
                raise EntityNotFound("Tenant", action.customer)
            return tenant.id
        for lookup, ref in self._references(action):
            if not ref:
                continue
            entity = lookup(ref)
            if entity is not None:
                return entity.tenant_id
        raise EntityNotFound("Tenant", f"no resolvable reference in {type(action).__name__}")

    def _references(self, action: ev.Action) -> list[tuple[Callable, str | None]]:
        ledger = self.ledger
        if isinstance(action, (ev.PaymentSucceeded, ev.PaymentFailed)):
            return [
                (ledger.get_payment_by_ref, action.id),
                (ledger.get_invoice_by_ref, action.invoice),
                (ledger.get_subscription_by_ref, action.subscription),
            ]
        if isinstance(action, ev.RefundIssued):
            return [(ledger.get_payment_by_ref, action.payment)]
        if isinstance(action, ev.InvoiceFinalized):
            return [
                (ledger.get_invoice_by_ref, action.id),
                (ledger.get_subscription_by_ref, action.subscription),
            ]
        if isinstance(action, (ev.InvoiceVoided, ev.DunningExhausted)):
            return [(ledger.get_invoice_by_ref, action.id)]
        if isinstance(action, ev.UsageReported):
            return [(ledger.get_subscription_by_ref, action.subscription)]
        return [(ledger.get_subscription_by_ref, getattr(action, "id", None))]

    @staticmethod
    def _owned(entity, tenant: Tenant, kind: str, ref: str):
        if entity.tenant_id != tenant.id:
            raise PermanentApplyError(f"{kind} {ref} does not belong to tenant {tenant.id}")
        return entity

    def _subscription(self, tenant: Tenant, ref: str | None, required: bool = True) -> Subscription | None:
        if not ref:
            return None
        sub = self.ledger.get_subscription_by_ref(ref)
        if sub is None or sub.deleted_at is not None:
            if required:
                raise EntityNotFound("Subscription", ref)
            return None
        return self._owned(sub, tenant, "Subscription", ref)

    def _invoice(self, tenant: Tenant, ref: str | None) -> Invoice | None:
        if not ref:
            return None
        invoice = self.ledger.get_invoice_by_ref(ref)
        if invoice is None:
            return None
        return self._owned(invoice, tenant, "Invoice", ref)

    def _require_invoice(self, tenant: Tenant, ref: str) -> Invoice:
        invoice = self._invoice(tenant, ref)
        if invoice is None:
            raise EntityNotFound("Invoice", ref)
        return invoice

    def _plan(self, subscription: Subscription) -> SubscriptionPlan:
        plan = self.db.get(SubscriptionPlan, subscription.plan_id)
        if plan is None:
            raise EntityNotFound("Plan", subscription.plan_id)
        return plan

    # ── Payment handlers ─────────────────────────────────

    def _payment_succeeded(self, tenant: Tenant, action: ev.PaymentSucceeded, event_id: str) -> ApplyResult:
        invoice = self._invoice(tenant, action.invoice)
        subscription = self._subscription(tenant, action.subscription)
        if subscription is None and invoice is not None and invoice.subscription_id:
            subscription = self.db.get(Subscription, invoice.subscription_id)

        payment = self.ledger.get_payment_by_ref(action.id)
        if payment is None:
            payment = self.ledger.add_payment(
                tenant_id=tenant.id,
                external_id=action.id,
                amount=action.amount,
                status=PaymentStatus.succeeded,
                currency=action.currency or settings.default_currency,
                subscription_id=subscription.id if subscription else None,
                payment_method=action.payment_method,
                external_charge_id=action.charge,
            )
        else:
            self._owned(payment, tenant, "Payment", action.id)
            if payment.status in (PaymentStatus.pending, PaymentStatus.processing, PaymentStatus.failed):
                payment.status = PaymentStatus.succeeded
                payment.failure_reason = None
                payment.amount = to_money(action.amount)
                payment.external_charge_id = payment.external_charge_id or action.charge
                self.ledger.touch(payment)

        if invoice is None and not action.invoice and payment.invoice_id:
            # Linked by an earlier failure event for the same payment.
            invoice = self.db.get(Invoice, payment.invoice_id)
            if invoice is not None:
                self._owned(invoice, tenant, "Invoice", str(payment.invoice_id))
                if subscription is None and invoice.subscription_id:
                    subscription = self.db.get(Subscription, invoice.subscription_id)

        if invoice is not None:
            self.reconciler.apply_payment(invoice, payment)
        elif action.invoice:
            # Invoice not seen yet; applied when it is finalized.
            metadata = dict(payment.metadata_ or {})
            metadata["pending_invoice"] = action.invoice
            payment.metadata_ = metadata
            logger.warning(
                "Payment %s references unknown invoice %s; held for reconciliation",
                action.id,
                action.invoice,
                extra={"tenant_id": str(tenant.id), "event_id": event_id},
            )

        if subscription is not None:
            if self.lifecycle.on_payment_succeeded(subscription, self._plan(subscription)):
                self.ledger.touch(subscription)

        body = f"We received your payment of {to_money(payment.amount)} {payment.currency}."
        if invoice is not None:
            body += f" Invoice {invoice.invoice_number} balance: {invoice.amount_remaining}."
        return ApplyResult(subject="Payment received", body=body)

    def _payment_failed(self, tenant: Tenant, action: ev.PaymentFailed, event_id: str) -> ApplyResult:
        invoice = self._invoice(tenant, action.invoice)
        subscription = self._subscription(tenant, action.subscription)
        if subscription is None and invoice is not None and invoice.subscription_id:
            subscription = self.db.get(Subscription, invoice.subscription_id)

        payment = self.ledger.get_payment_by_ref(action.id)
        if payment is None:
            payment = self.ledger.add_payment(
                tenant_id=tenant.id,
                external_id=action.id,
                amount=action.amount,
                status=PaymentStatus.failed,
                currency=action.currency or settings.default_currency,
                subscription_id=subscription.id if subscription else None,
                invoice_id=invoice.id if invoice else None,
                payment_method=action.payment_method,
                failure_reason=action.failure_reason,
            )
        else:
            self._owned(payment, tenant, "Payment", action.id)
            if payment.status in (PaymentStatus.succeeded, PaymentStatus.refunded):
                logger.warning(
                    "Late failure for captured payment %s ignored",
                    action.id,
                    extra={"tenant_id": str(tenant.id), "event_id": event_id},
                )
                return ApplyResult()
            payment.status = PaymentStatus.failed
            payment.failure_reason = action.failure_reason
            self.ledger.touch(payment)

        if subscription is not None and self.lifecycle.on_payment_failed(subscription):
            self.ledger.touch(subscription)

        reason = f" Reason: {action.failure_reason}." if action.failure_reason else ""
        return ApplyResult(
            subject="Payment failed",
            body=f"Your payment {action.id} could not be processed.{reason}",
        )

    def _refund_issued(self, tenant: Tenant, action: ev.RefundIssued, event_id: str) -> ApplyResult:
        payment = self.ledger.get_payment_by_ref(action.payment)
        if payment is None:
            raise EntityNotFound("Payment", action.payment)
        self._owned(payment, tenant, "Payment", action.payment)
        if payment.status not in (PaymentStatus.succeeded, PaymentStatus.refunded):
            raise PermanentApplyError(
                f"Payment {action.payment} is {PaymentStatus(payment.status).value} and cannot be refunded"
            )
        invoice = self.db.get(Invoice, payment.invoice_id) if payment.invoice_id else None
        self.reconciler.apply_refund(invoice, payment, action.amount, action.refund or event_id)
        return ApplyResult(
            subject="Refund issued",
            body=f"A refund of {to_money(action.amount)} {payment.currency} was issued.",
        )

    # ── Invoice handlers ─────────────────────────────────

    def _invoice_finalized(self, tenant: Tenant, action: ev.InvoiceFinalized, event_id: str) -> ApplyResult:
        subscription = self._subscription(tenant, action.subscription)
        invoice = self._invoice(tenant, action.id)
        if invoice is None:
            invoice = self.ledger.add_invoice(
                tenant_id=tenant.id,
                subscription_id=subscription.id if subscription else None,
                external_id=action.id,
                invoice_number=action.number,
                amount_due=action.amount_due,
                currency=action.currency or settings.default_currency,
                due_date=action.due_date,
                period_start=action.period_start,
                period_end=action.period_end,
            )
        if not self.reconciler.finalize(invoice):
            return ApplyResult()
        self._apply_held_payments(tenant, invoice)
        return ApplyResult(
            subject=f"Invoice {invoice.invoice_number}",
            body=f"Invoice {invoice.invoice_number} for {invoice.amount_due} {invoice.currency} is now due.",
            documents=[build_invoice_document(invoice)],
        )

    def _apply_held_payments(self, tenant: Tenant, invoice: Invoice) -> None:
        if not invoice.external_id:
            return
        held = self.db.scalars(
            select(Payment).where(
                Payment.tenant_id == tenant.id,
                Payment.invoice_id.is_(None),
                Payment.status == PaymentStatus.succeeded,
            )
        ).all()
        for payment in held:
            metadata = dict(payment.metadata_ or {})
            if metadata.get("pending_invoice") != invoice.external_id:
                continue
            try:
                self.reconciler.apply_payment(invoice, payment)
            except OverpaymentRejected as exc:
                logger.warning(
                    "Held payment %s not applied: %s",
                    payment.external_id,
                    exc.message,
                    extra={"tenant_id": str(tenant.id)},
                )
                continue
            metadata.pop("pending_invoice", None)
            payment.metadata_ = metadata

    def _invoice_voided(self, tenant: Tenant, action: ev.InvoiceVoided, event_id: str) -> ApplyResult:
        invoice = self._require_invoice(tenant, action.id)
        if not self.reconciler.void(invoice):
            return ApplyResult()
        return ApplyResult(
            subject=f"Invoice {invoice.invoice_number} voided",
            body=f"Invoice {invoice.invoice_number} was voided and is no longer due.",
        )

    def _dunning_exhausted(self, tenant: Tenant, action: ev.DunningExhausted, event_id: str) -> ApplyResult:
        invoice = self._require_invoice(tenant, action.id)
        if not self.reconciler.mark_uncollectible(invoice):
            return ApplyResult()
        return ApplyResult(
            subject=f"Invoice {invoice.invoice_number} is overdue",
            body=f"Invoice {invoice.invoice_number} has {invoice.amount_remaining} outstanding.",
        )

    # ── Subscription handlers ────────────────────────────

    def _subscription_created(self, tenant: Tenant, action: ev.SubscriptionCreated, event_id: str) -> ApplyResult:
        existing = self.ledger.get_subscription_by_ref(action.id)
        if existing is not None:
            self._owned(existing, tenant, "Subscription", action.id)
            return ApplyResult()
        plan = self.ledger.get_plan_by_ref(action.plan)
        if plan is None or not plan.is_active:
            raise EntityNotFound("Plan", action.plan)
        subscription = Subscription(
            tenant_id=tenant.id,
            plan_id=plan.id,
            external_id=action.id,
            is_metered=action.metered,
            metadata_={},
        )
        self.lifecycle.start(
            subscription,
            plan,
            period_start=action.current_period_start,
            period_end=action.current_period_end,
            trial_end=action.trial_end,
        )
        self.db.add(subscription)
        self.db.flush()
        logger.info(
            "Created subscription %s (%s) for tenant %s",
            subscription.id,
            subscription.status.value,
            tenant.id,
            extra={"tenant_id": str(tenant.id), "event_id": event_id},
        )
        return ApplyResult(
            subject="Subscription started",
            body=f"Your {plan.name} subscription has started.",
        )

    def _subscription_updated(self, tenant: Tenant, action: ev.SubscriptionUpdated, event_id: str) -> ApplyResult:
        subscription = self._subscription(tenant, action.id)
        if action.cancel_at_period_end is None:
            return ApplyResult()
        if not self.lifecycle.schedule_cancel(subscription, action.cancel_at_period_end):
            return ApplyResult()
        self.ledger.touch(subscription)
        if action.cancel_at_period_end:
            return ApplyResult(
                subject="Cancellation scheduled",
                body="Your subscription will end at the close of the current billing period.",
            )
        return ApplyResult(
            subject="Cancellation withdrawn",
            body="Your subscription will continue to renew.",
        )

    def _subscription_cancelled(self, tenant: Tenant, action: ev.SubscriptionCancelled, event_id: str) -> ApplyResult:
        subscription = self._subscription(tenant, action.id)
        if not self.lifecycle.cancel_now(subscription, action.cancelled_at):
            return ApplyResult()
        self.ledger.touch(subscription)
        return ApplyResult(subject="Subscription cancelled", body="Your subscription has been cancelled.")

    def _subscription_paused(self, tenant: Tenant, action: ev.SubscriptionPaused, event_id: str) -> ApplyResult:
        subscription = self._subscription(tenant, action.id)
        if not self.lifecycle.pause(subscription):
            return ApplyResult()
        self.ledger.touch(subscription)
        return ApplyResult(subject="Subscription paused", body="Your subscription is paused.")

    def _subscription_resumed(self, tenant: Tenant, action: ev.SubscriptionResumed, event_id: str) -> ApplyResult:
        subscription = self._subscription(tenant, action.id)
        if not self.lifecycle.resume(subscription):
            return ApplyResult()
        self.ledger.touch(subscription)
        return ApplyResult(subject="Subscription resumed", body="Your subscription is active again.")

    def _trial_ended(self, tenant: Tenant, action: ev.TrialEnded, event_id: str) -> ApplyResult:
        subscription = self._subscription(tenant, action.id)
        if not self.lifecycle.expire_trial(subscription):
            return ApplyResult()
        self.ledger.touch(subscription)
        return ApplyResult(
            subject="Your trial has ended",
            body="Add a payment method to keep your subscription active.",
        )

    def _period_rollover(self, tenant: Tenant, action: ev.PeriodRollover, event_id: str) -> ApplyResult:
        subscription = self._subscription(tenant, action.id)
        plan = self._plan(subscription)
        result = ApplyResult()
        if subscription.is_metered and not self.lifecycle.is_stale_boundary(subscription, action.period_end):
            try:
                invoice = usage_aggregator.invoice_period(self.db, subscription)
            except PeriodAlreadyInvoiced as exc:
                logger.info(
                    "Usage already invoiced for subscription %s: %s",
                    subscription.id,
                    exc.message,
                    extra={"tenant_id": str(tenant.id), "event_id": event_id},
                )
            else:
                result.subject = f"Usage invoice {invoice.invoice_number}"
                result.body = f"Usage charges of {invoice.amount_due} {invoice.currency} were recorded."
        previous_status = subscription.status
        if self.lifecycle.rollover(subscription, plan, action.period_end):
            self.ledger.touch(subscription)
            if subscription.status != previous_status:
                result.subject = "Subscription ended"
                result.body = "Your subscription ended at the close of the billing period."
        return result

    # ── Usage ────────────────────────────────────────────

    def _usage_reported(self, tenant: Tenant, action: ev.UsageReported, event_id: str) -> ApplyResult:
        subscription = self._subscription(tenant, action.subscription)
        usage_aggregator.append_usage(
            self.db,
            tenant_id=tenant.id,
            subscription_id=subscription.id if subscription else None,
            metric_name=action.metric_name,
            quantity=action.quantity,
            unit_price=action.unit_price,
            timestamp=action.timestamp,
            metadata={"event_id": event_id},
        )
        return ApplyResult()
