import sys
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from types import ModuleType
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any billing_engine imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


# Create a mock db module
mock_db_module = ModuleType("billing_engine.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda: _test_engine

# Also mock billing_engine.config to prevent .env loading
mock_config_module = ModuleType("billing_engine.config")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    redis_url = "redis://localhost:6379/0"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    event_max_retries = 3
    store_retry_attempts = 2
    retry_backoff_base_seconds = 0
    retry_backoff_max_seconds = 0
    worker_count = 2
    worker_batch_size = 50
    worker_poll_seconds = 0.01
    sweep_interval_seconds = 30
    allow_overpayment = False
    trial_expiry_status = "incomplete"
    invoice_due_days = 30
    default_currency = "USD"
    webhook_secret = ""
    notifier_backend = "outbox"
    notifier_webhook_url = ""
    notifier_timeout_seconds = 5
    cors_origins = ""


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []

# Insert mocks before any billing_engine imports
sys.modules["billing_engine.config"] = mock_config_module
sys.modules["billing_engine.db"] = mock_db_module

# Now import the models - they'll use our mocked db module
from billing_engine.models.billing import (  # noqa: E402
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.models.notification import Notification  # noqa: E402, F401
from billing_engine.models.tenant import (  # noqa: E402
    BillingPeriod,
    SubscriptionPlan,
    Tenant,
)
from billing_engine.schemas.billing import ProviderEvent  # noqa: E402

# Create all tables
TestBase.metadata.create_all(_test_engine)

Base = TestBase

PERIOD_START = datetime(2026, 1, 1, tzinfo=UTC)
PERIOD_END = datetime(2026, 2, 1, tzinfo=UTC)


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    """Session on the shared in-memory database; all rows are removed afterwards."""
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(TestBase.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


@pytest.fixture()
def settings():
    return mock_config_module.settings


def _ref(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@pytest.fixture()
def tenant(db_session):
    tenant = Tenant(
        name="Acme Corp",
        email=f"billing-{uuid.uuid4().hex[:8]}@example.com",
        external_customer_id=_ref("cus"),
        metadata_={},
    )
    db_session.add(tenant)
    db_session.commit()
    db_session.refresh(tenant)
    return tenant


@pytest.fixture()
def plan(db_session):
    plan = SubscriptionPlan(
        name="Professional",
        price=Decimal("99.99"),
        billing_period=BillingPeriod.monthly,
        features=["25 users"],
        is_active=True,
        external_price_id=_ref("price"),
        metadata_={},
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture()
def make_subscription(db_session, tenant, plan):
    def _make(status=SubscriptionStatus.incomplete, **kwargs):
        subscription = Subscription(
            tenant_id=kwargs.pop("tenant_id", tenant.id),
            plan_id=plan.id,
            external_id=kwargs.pop("external_id", _ref("sub")),
            status=status,
            current_period_start=kwargs.pop("current_period_start", PERIOD_START),
            current_period_end=kwargs.pop("current_period_end", PERIOD_END),
            cancel_at_period_end=kwargs.pop("cancel_at_period_end", False),
            is_metered=kwargs.pop("is_metered", False),
            metadata_={},
            **kwargs,
        )
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _make


@pytest.fixture()
def subscription(make_subscription):
    return make_subscription()


@pytest.fixture()
def make_invoice(db_session, tenant):
    def _make(amount_due="99.99", status=InvoiceStatus.open, **kwargs):
        due = Decimal(amount_due)
        invoice = Invoice(
            tenant_id=kwargs.pop("tenant_id", tenant.id),
            invoice_number=kwargs.pop("invoice_number", _ref("INV").upper()),
            external_id=kwargs.pop("external_id", _ref("in")),
            amount_due=due,
            amount_paid=Decimal("0.00"),
            amount_remaining=due,
            currency="USD",
            status=status,
            line_items=[],
            metadata_={},
            **kwargs,
        )
        db_session.add(invoice)
        db_session.commit()
        db_session.refresh(invoice)
        return invoice

    return _make


@pytest.fixture()
def invoice(make_invoice, subscription):
    return make_invoice(subscription_id=subscription.id)


@pytest.fixture()
def make_payment(db_session, tenant):
    def _make(amount="99.99", status=PaymentStatus.succeeded, **kwargs):
        payment = Payment(
            tenant_id=kwargs.pop("tenant_id", tenant.id),
            external_id=kwargs.pop("external_id", _ref("pi")),
            amount=Decimal(amount),
            currency="USD",
            status=status,
            refunded_amount=Decimal("0.00"),
            metadata_={},
            **kwargs,
        )
        db_session.add(payment)
        db_session.commit()
        db_session.refresh(payment)
        return payment

    return _make


@pytest.fixture()
def make_event():
    def _make(event_type: str, obj: dict, event_id: str | None = None, source="stripe"):
        return ProviderEvent(
            id=event_id or _ref("evt"),
            type=event_type,
            source=source,
            data={"object": obj},
        )

    return _make


@pytest.fixture()
def notifier():
    gateway = MagicMock()
    gateway.notify.return_value = "accepted"
    return gateway


@pytest.fixture()
def documents():
    return MagicMock()


@pytest.fixture()
def processor(db_session, notifier, documents):
    from billing_engine.services.billing.processor import EventProcessor

    return EventProcessor(db_session, notifier=notifier, documents=documents)


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session):
    """Create a test client with database dependency override."""
    from billing_engine.api.deps import get_db as api_get_db
    from billing_engine.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()
