from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from billing_engine.api.deps import get_db
from billing_engine.errors import EntityNotFound
from billing_engine.models.billing import Invoice, Subscription
from billing_engine.models.tenant import Tenant
from billing_engine.schemas.billing import (
    InvoiceRead,
    TenantBalance,
    UsageRecordCreate,
    UsageRecordRead,
    WebhookEventRead,
)
from billing_engine.schemas.common import ListResponse
from billing_engine.services.billing.event_store import event_store
from billing_engine.services.billing.ledger import LedgerStore
from billing_engine.services.billing.reconciliation import InvoiceReconciler
from billing_engine.services.billing.usage import usage_aggregator

router = APIRouter(tags=["billing"])


# ── Operator view of stored events ───────────────────────


@router.get("/webhook-events", response_model=ListResponse[WebhookEventRead])
def list_webhook_events(
    source: str | None = None,
    event_type: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return event_store.list_response(
        db, source, event_type, status, order_by, order_dir, limit, offset
    )


@router.get("/webhook-events/{item_id}", response_model=WebhookEventRead)
def get_webhook_event(item_id: UUID, db: Session = Depends(get_db)):
    return event_store.get(db, str(item_id))


@router.post("/webhook-events/{item_id}/requeue", response_model=WebhookEventRead)
def requeue_webhook_event(item_id: UUID, db: Session = Depends(get_db)):
    return event_store.requeue(db, str(item_id))


# ── Ledger reads ─────────────────────────────────────────


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(invoice_id: UUID, db: Session = Depends(get_db)):
    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        raise EntityNotFound("Invoice", invoice_id)
    return invoice


@router.get("/tenants/{tenant_id}/balance", response_model=TenantBalance)
def get_tenant_balance(tenant_id: UUID, db: Session = Depends(get_db)):
    tenant = db.get(Tenant, tenant_id)
    if tenant is None or tenant.deleted_at is not None:
        raise EntityNotFound("Tenant", tenant_id)
    return InvoiceReconciler.outstanding_balance(db, tenant_id)


# ── Usage ────────────────────────────────────────────────


@router.post(
    "/usage-records",
    response_model=UsageRecordRead,
    status_code=status.HTTP_201_CREATED,
)
def create_usage_record(payload: UsageRecordCreate, db: Session = Depends(get_db)):
    return usage_aggregator.record_usage(db, payload)


@router.post(
    "/subscriptions/{subscription_id}/usage-invoice",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
)
def create_usage_invoice(subscription_id: UUID, db: Session = Depends(get_db)):
    subscription = db.get(Subscription, subscription_id)
    if subscription is None or subscription.deleted_at is not None:
        raise EntityNotFound("Subscription", subscription_id)
    ledger = LedgerStore(db)
    with ledger.unit_of_work(subscription.tenant_id):
        subscription = db.get(Subscription, subscription_id)
        invoice = usage_aggregator.invoice_period(db, subscription)
    db.refresh(invoice)
    return invoice
