"""Usage metering: append-only records and per-period aggregation."""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.config import settings
from billing_engine.errors import EntityNotFound, PeriodAlreadyInvoiced, TransientStoreError
from billing_engine.models.billing import Invoice, InvoiceStatus, Subscription, UsageRecord
from billing_engine.models.tenant import Tenant
from billing_engine.schemas.billing import LineItem, UsageRecordCreate
from billing_engine.services.billing.ledger import LedgerStore
from billing_engine.services.common import as_utc, to_money, to_unit_price

logger = logging.getLogger(__name__)

USAGE_INVOICE_KIND = "usage"


class UsageAggregator:
    @staticmethod
    def append_usage(
        db: Session,
        *,
        tenant_id: UUID,
        metric_name: str,
        quantity: Decimal,
        timestamp: datetime,
        subscription_id: UUID | None = None,
        unit_price: Decimal | None = None,
        metadata: dict | None = None,
    ) -> UsageRecord:
        """Add a record to the open transaction without committing."""
        record = UsageRecord(
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            metric_name=metric_name,
            quantity=to_money(quantity),
            unit_price=to_unit_price(unit_price),
            timestamp=as_utc(timestamp),
            metadata_=metadata or {},
        )
        db.add(record)
        db.flush()
        return record

    @staticmethod
    def record_usage(db: Session, payload: UsageRecordCreate) -> UsageRecord:
        tenant = db.get(Tenant, payload.tenant_id)
        if tenant is None or tenant.deleted_at is not None:
            raise EntityNotFound("Tenant", payload.tenant_id)
        if payload.subscription_id is not None:
            sub = db.get(Subscription, payload.subscription_id)
            if sub is None or sub.tenant_id != payload.tenant_id:
                raise EntityNotFound("Subscription", payload.subscription_id)
        try:
            record = UsageAggregator.append_usage(
                db,
                tenant_id=payload.tenant_id,
                subscription_id=payload.subscription_id,
                metric_name=payload.metric_name,
                quantity=payload.quantity,
                unit_price=payload.unit_price,
                timestamp=payload.timestamp,
                metadata=payload.metadata_,
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise TransientStoreError("Could not store usage record") from exc
        db.refresh(record)
        logger.info(
            "Recorded usage %s=%s for tenant %s",
            record.metric_name,
            record.quantity,
            record.tenant_id,
            extra={"tenant_id": str(record.tenant_id)},
        )
        return record

    @staticmethod
    def aggregate(
        db: Session, subscription: Subscription, start: datetime, end: datetime
    ) -> list[LineItem]:
        """Sum usage in [start, end) into one line item per metric, sorted by name."""
        start = as_utc(start)
        end = as_utc(end)
        records = db.scalars(
            select(UsageRecord)
            .where(
                UsageRecord.subscription_id == subscription.id,
                UsageRecord.timestamp >= start,
                UsageRecord.timestamp < end,
            )
            .order_by(UsageRecord.metric_name, UsageRecord.timestamp, UsageRecord.id)
        ).all()

        quantities: dict[str, Decimal] = defaultdict(lambda: Decimal("0.00"))
        amounts: dict[str, Decimal] = defaultdict(lambda: Decimal("0.00"))
        prices: dict[str, set[Decimal]] = defaultdict(set)
        for record in records:
            quantity = to_money(record.quantity)
            quantities[record.metric_name] += quantity
            if record.unit_price is not None:
                price = to_unit_price(record.unit_price)
                prices[record.metric_name].add(price)
                amounts[record.metric_name] += quantity * price

        items = []
        for metric in sorted(quantities):
            metric_prices = prices[metric]
            items.append(
                LineItem(
                    metric_name=metric,
                    quantity=quantities[metric],
                    unit_price=next(iter(metric_prices)) if len(metric_prices) == 1 else None,
                    amount=to_money(amounts[metric]),
                    period_start=start,
                    period_end=end,
                )
            )
        return items

    @staticmethod
    def find_period_invoice(
        db: Session, subscription: Subscription, start: datetime, end: datetime
    ) -> Invoice | None:
        candidates = db.scalars(
            select(Invoice).where(
                Invoice.subscription_id == subscription.id,
                Invoice.status != InvoiceStatus.void,
            )
        ).all()
        for invoice in candidates:
            if (invoice.metadata_ or {}).get("kind") != USAGE_INVOICE_KIND:
                continue
            if as_utc(invoice.period_start) == start and as_utc(invoice.period_end) == end:
                return invoice
        return None

    @staticmethod
    def invoice_period(
        db: Session,
        subscription: Subscription,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Invoice:
        """Create a draft usage invoice for the subscription's current period."""
        start = as_utc(start or subscription.current_period_start)
        end = as_utc(end or subscription.current_period_end)
        if start is None or end is None:
            raise PeriodAlreadyInvoiced(
                f"Subscription {subscription.id} has no billing period to invoice"
            )
        existing = UsageAggregator.find_period_invoice(db, subscription, start, end)
        if existing is not None:
            raise PeriodAlreadyInvoiced(
                f"Period {start.isoformat()} - {end.isoformat()} already invoiced "
                f"as {existing.invoice_number}",
                details={"invoice_id": str(existing.id)},
            )
        items = UsageAggregator.aggregate(db, subscription, start, end)
        total = sum((item.amount for item in items), Decimal("0.00"))
        invoice = LedgerStore(db).add_invoice(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            amount_due=total,
            currency=settings.default_currency,
            period_start=start,
            period_end=end,
            line_items=[item.model_dump(mode="json") for item in items],
            metadata={"kind": USAGE_INVOICE_KIND},
        )
        logger.info(
            "Usage invoice %s for subscription %s: %d line items, total %s",
            invoice.invoice_number,
            subscription.id,
            len(items),
            total,
            extra={"tenant_id": str(subscription.tenant_id)},
        )
        return invoice


usage_aggregator = UsageAggregator()
