import uuid
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from billing_engine.errors import EntityNotFound, PeriodAlreadyInvoiced
from billing_engine.models.billing import InvoiceStatus, UsageRecord
from billing_engine.schemas.billing import UsageRecordCreate
from billing_engine.services.billing.usage import USAGE_INVOICE_KIND, usage_aggregator
from billing_engine.services.common import as_utc

PERIOD_START = datetime(2026, 1, 1, tzinfo=UTC)
PERIOD_END = datetime(2026, 2, 1, tzinfo=UTC)


def _usage(db, sub, metric, quantity, price="0.10", day=5):
    return usage_aggregator.append_usage(
        db,
        tenant_id=sub.tenant_id,
        subscription_id=sub.id,
        metric_name=metric,
        quantity=Decimal(quantity),
        unit_price=Decimal(price) if price is not None else None,
        timestamp=datetime(2026, 1, day, tzinfo=UTC),
    )


def test_aggregate_sums_per_metric(db_session, make_subscription):
    sub = make_subscription(is_metered=True)
    _usage(db_session, sub, "api_calls", "10", day=3)
    _usage(db_session, sub, "api_calls", "15", day=20)
    db_session.commit()

    items = usage_aggregator.aggregate(db_session, sub, PERIOD_START, PERIOD_END)
    assert len(items) == 1
    assert items[0].metric_name == "api_calls"
    assert items[0].quantity == Decimal("25.00")
    assert items[0].unit_price == Decimal("0.1000")
    assert items[0].amount == Decimal("2.50")


def test_aggregate_orders_metrics_and_bounds_period(db_session, make_subscription):
    sub = make_subscription(is_metered=True)
    _usage(db_session, sub, "storage_gb", "2", price="1.00")
    _usage(db_session, sub, "api_calls", "5")
    usage_aggregator.append_usage(
        db_session,
        tenant_id=sub.tenant_id,
        subscription_id=sub.id,
        metric_name="api_calls",
        quantity=Decimal("100"),
        unit_price=Decimal("0.10"),
        timestamp=PERIOD_END,
    )
    db_session.commit()

    items = usage_aggregator.aggregate(db_session, sub, PERIOD_START, PERIOD_END)
    assert [item.metric_name for item in items] == ["api_calls", "storage_gb"]
    assert items[0].quantity == Decimal("5.00")
    assert items[1].amount == Decimal("2.00")


def test_aggregate_mixed_prices_drops_unit_price(db_session, make_subscription):
    sub = make_subscription(is_metered=True)
    _usage(db_session, sub, "api_calls", "10", price="0.10")
    _usage(db_session, sub, "api_calls", "10", price="0.20")
    db_session.commit()

    (item,) = usage_aggregator.aggregate(db_session, sub, PERIOD_START, PERIOD_END)
    assert item.unit_price is None
    assert item.amount == Decimal("3.00")


def test_aggregate_rounds_sub_cent_prices_once(db_session, make_subscription):
    sub = make_subscription(is_metered=True)
    for day in (3, 4, 5):
        _usage(db_session, sub, "api_calls", "1", price="0.0050", day=day)
    db_session.commit()

    (item,) = usage_aggregator.aggregate(db_session, sub, PERIOD_START, PERIOD_END)
    assert item.quantity == Decimal("3.00")
    assert item.unit_price == Decimal("0.0050")
    assert item.amount == Decimal("0.02")


def test_invoice_period_creates_draft_usage_invoice(db_session, make_subscription):
    sub = make_subscription(is_metered=True)
    _usage(db_session, sub, "api_calls", "10")
    _usage(db_session, sub, "api_calls", "15")

    invoice = usage_aggregator.invoice_period(db_session, sub)
    db_session.commit()

    assert invoice.status == InvoiceStatus.draft
    assert invoice.amount_due == Decimal("2.50")
    assert invoice.amount_remaining == Decimal("2.50")
    assert invoice.metadata_["kind"] == USAGE_INVOICE_KIND
    assert as_utc(invoice.period_start) == PERIOD_START
    assert as_utc(invoice.period_end) == PERIOD_END
    assert len(invoice.line_items) == 1
    assert invoice.line_items[0]["metric_name"] == "api_calls"
    assert Decimal(invoice.line_items[0]["quantity"]) == Decimal("25")


def test_invoice_period_twice_raises(db_session, make_subscription):
    sub = make_subscription(is_metered=True)
    _usage(db_session, sub, "api_calls", "10")
    usage_aggregator.invoice_period(db_session, sub)
    db_session.commit()

    with pytest.raises(PeriodAlreadyInvoiced):
        usage_aggregator.invoice_period(db_session, sub)


def test_voided_usage_invoice_allows_reinvoicing(db_session, make_subscription):
    sub = make_subscription(is_metered=True)
    first = usage_aggregator.invoice_period(db_session, sub)
    first.status = InvoiceStatus.void
    db_session.commit()

    second = usage_aggregator.invoice_period(db_session, sub)
    assert second.id != first.id


def test_record_usage_commits(db_session, tenant, subscription):
    record = usage_aggregator.record_usage(
        db_session,
        UsageRecordCreate(
            tenant_id=tenant.id,
            subscription_id=subscription.id,
            metric_name="seats",
            quantity=Decimal("3"),
            timestamp=datetime(2026, 1, 2, tzinfo=UTC),
            metadata={"source": "import"},
        ),
    )
    stored = db_session.get(UsageRecord, record.id)
    assert stored.quantity == Decimal("3.00")
    assert stored.metadata_ == {"source": "import"}


def test_record_usage_unknown_tenant(db_session):
    with pytest.raises(EntityNotFound):
        usage_aggregator.record_usage(
            db_session,
            UsageRecordCreate(
                tenant_id=uuid.uuid4(),
                metric_name="seats",
                quantity=Decimal("1"),
                timestamp=datetime(2026, 1, 2, tzinfo=UTC),
            ),
        )


def test_record_usage_foreign_subscription(db_session, tenant, make_subscription):
    from billing_engine.models.tenant import Tenant

    other = Tenant(name="Other", email=f"o-{uuid.uuid4().hex[:6]}@example.com", metadata_={})
    db_session.add(other)
    db_session.commit()
    foreign = make_subscription(tenant_id=other.id)

    with pytest.raises(EntityNotFound):
        usage_aggregator.record_usage(
            db_session,
            UsageRecordCreate(
                tenant_id=tenant.id,
                subscription_id=foreign.id,
                metric_name="seats",
                quantity=Decimal("1"),
                timestamp=datetime(2026, 1, 2, tzinfo=UTC),
            ),
        )
