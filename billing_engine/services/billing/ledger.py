"""Ledger state access: tenant-scoped units of work and entity lookups."""
from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from billing_engine.errors import EntityNotFound, TransientStoreError
from billing_engine.models.billing import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
)
from billing_engine.models.tenant import SubscriptionPlan, Tenant
from billing_engine.services.common import coerce_uuid, to_money, utcnow

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


class TenantLocks:
    """Per-tenant mutexes for workers sharing one process.

    Cross-process exclusion comes from the tenant row lock taken inside
    ``LedgerStore.unit_of_work``.

    One lock is kept per tenant seen by this process and never evicted, so
    the map is bounded by the tenant count.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[UUID, threading.Lock] = {}

    def get(self, tenant_id: UUID) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[tenant_id] = lock
            return lock

    @contextmanager
    def hold(self, tenant_id: UUID) -> Iterator[None]:
        with self.get(tenant_id):
            yield


tenant_locks = TenantLocks()


def generate_invoice_number() -> str:
    now = utcnow()
    return f"INV-{now:%Y%m}-{secrets.token_hex(4).upper()}"


class LedgerStore:
    def __init__(self, db: Session, locks: TenantLocks | None = None) -> None:
        self.db = db
        self.locks = locks or tenant_locks

    # ── Transactions ─────────────────────────────────────

    @contextmanager
    def translate_errors(self) -> Iterator[None]:
        """Re-raise connectivity failures as TransientStoreError."""
        try:
            yield
        except TRANSIENT_ERRORS as exc:
            self.db.rollback()
            raise TransientStoreError(f"Ledger store unavailable: {exc}") from exc

    @contextmanager
    def unit_of_work(self, tenant_id: UUID) -> Iterator[Tenant]:
        """Serialize writes for one tenant and commit them atomically."""
        with self.locks.hold(tenant_id), self.translate_errors():
            try:
                # Rows loaded before the lock may be stale.
                self.db.expire_all()
                tenant = self.db.scalar(
                    select(Tenant).where(Tenant.id == tenant_id).with_for_update()
                )
                if tenant is None or tenant.deleted_at is not None:
                    raise EntityNotFound("Tenant", tenant_id)
                yield tenant
                self.db.commit()
            except BaseException:
                self.db.rollback()
                raise

    def lock_event(self, item_id: UUID) -> WebhookEvent | None:
        return self.db.scalar(
            select(WebhookEvent).where(WebhookEvent.id == item_id).with_for_update()
        )

    @staticmethod
    def touch(*rows) -> None:
        now = utcnow()
        for row in rows:
            if row is not None and hasattr(row, "updated_at"):
                row.updated_at = now

    # ── Lookups ──────────────────────────────────────────

    def get_tenant(self, tenant_id: UUID | str) -> Tenant | None:
        return self.db.get(Tenant, coerce_uuid(tenant_id))

    def get_tenant_by_customer_ref(self, ref: str) -> Tenant | None:
        return self.db.scalar(select(Tenant).where(Tenant.external_customer_id == ref))

    def get_plan_by_ref(self, ref: str) -> SubscriptionPlan | None:
        stmt = select(SubscriptionPlan).where(
            SubscriptionPlan.external_price_id == ref,
            SubscriptionPlan.deleted_at.is_(None),
        )
        plan = self.db.scalar(stmt)
        if plan is None:
            plan = self._get_by_uuid(SubscriptionPlan, ref)
        return plan

    def get_subscription_by_ref(self, ref: str) -> Subscription | None:
        sub = self.db.scalar(select(Subscription).where(Subscription.external_id == ref))
        return sub or self._get_by_uuid(Subscription, ref)

    def get_invoice_by_ref(self, ref: str) -> Invoice | None:
        invoice = self.db.scalar(select(Invoice).where(Invoice.external_id == ref))
        return invoice or self._get_by_uuid(Invoice, ref)

    def get_payment_by_ref(self, ref: str) -> Payment | None:
        payment = self.db.scalar(select(Payment).where(Payment.external_id == ref))
        return payment or self._get_by_uuid(Payment, ref)

    def _get_by_uuid(self, model, ref: str):
        try:
            key = coerce_uuid(ref)
        except ValueError:
            return None
        return self.db.get(model, key)

    def active_subscriptions(self) -> list[Subscription]:
        """Live subscriptions (active or trialing) of live tenants."""
        stmt = (
            select(Subscription)
            .join(Tenant, Subscription.tenant_id == Tenant.id)
            .where(
                Subscription.deleted_at.is_(None),
                Tenant.deleted_at.is_(None),
                Subscription.status.in_(
                    (SubscriptionStatus.active, SubscriptionStatus.trialing)
                ),
            )
            .order_by(Subscription.created_at.asc())
        )
        return list(self.db.scalars(stmt).all())

    # ── Writes ───────────────────────────────────────────

    def add_payment(
        self,
        *,
        tenant_id: UUID,
        external_id: str | None,
        amount: Decimal,
        status: PaymentStatus,
        currency: str,
        subscription_id: UUID | None = None,
        invoice_id: UUID | None = None,
        payment_method: str | None = None,
        external_charge_id: str | None = None,
        failure_reason: str | None = None,
    ) -> Payment:
        payment = Payment(
            tenant_id=tenant_id,
            external_id=external_id,
            amount=to_money(amount),
            currency=currency.upper(),
            status=status,
            subscription_id=subscription_id,
            invoice_id=invoice_id,
            payment_method=payment_method,
            external_charge_id=external_charge_id,
            failure_reason=failure_reason,
            refunded_amount=Decimal("0.00"),
            metadata_={},
        )
        self.db.add(payment)
        self.db.flush()
        logger.info(
            "Recorded payment %s (%s) for tenant %s",
            payment.external_id or payment.id,
            status.value,
            tenant_id,
            extra={"tenant_id": str(tenant_id)},
        )
        return payment

    def add_invoice(
        self,
        *,
        tenant_id: UUID,
        amount_due: Decimal,
        currency: str,
        subscription_id: UUID | None = None,
        external_id: str | None = None,
        invoice_number: str | None = None,
        due_date=None,
        period_start=None,
        period_end=None,
        line_items: list | None = None,
        metadata: dict | None = None,
    ) -> Invoice:
        due = to_money(amount_due)
        invoice = Invoice(
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            external_id=external_id,
            invoice_number=invoice_number or generate_invoice_number(),
            amount_due=due,
            amount_paid=Decimal("0.00"),
            amount_remaining=due,
            currency=currency.upper(),
            status=InvoiceStatus.draft,
            due_date=due_date,
            period_start=period_start,
            period_end=period_end,
            line_items=line_items or [],
            metadata_=metadata or {},
        )
        self.db.add(invoice)
        self.db.flush()
        logger.info(
            "Created invoice %s for tenant %s",
            invoice.invoice_number,
            tenant_id,
            extra={"tenant_id": str(tenant_id)},
        )
        return invoice
