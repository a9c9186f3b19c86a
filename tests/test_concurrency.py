import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from billing_engine.db import Base
from billing_engine.errors import DuplicateEvent
from billing_engine.models.billing import WebhookEvent
from billing_engine.models.tenant import Tenant
from billing_engine.schemas.billing import ProviderEvent
from billing_engine.services.billing.event_store import event_store
from billing_engine.services.billing.ledger import LedgerStore, TenantLocks


@pytest.fixture()
def file_sessions(tmp_path):
    """Session factory on a file database so every thread gets its own connection."""
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    finally:
        engine.dispose()


def _event(event_id):
    return ProviderEvent(
        id=event_id,
        type="payment_intent.succeeded",
        data={"object": {"id": "pi_race", "amount": "10.00"}},
    )


def test_concurrent_appends_of_same_event_store_one_row(file_sessions):
    workers = 6
    barrier = threading.Barrier(workers)

    def deliver(_):
        session = file_sessions()
        try:
            barrier.wait()
            event_store.append(session, _event("evt_race"))
            return "stored"
        except DuplicateEvent:
            return "duplicate"
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = list(executor.map(deliver, range(workers)))

    assert results.count("stored") == 1
    assert results.count("duplicate") == workers - 1
    with file_sessions() as session:
        count = session.scalar(
            select(func.count()).select_from(WebhookEvent).where(WebhookEvent.event_id == "evt_race")
        )
    assert count == 1


def test_append_losing_insert_race_raises_duplicate(file_sessions):
    first, second = file_sessions(), file_sessions()
    try:
        event_store.append(first, _event("evt_late"))
        # The pre-check misses, as if both deliveries read before either insert.
        with patch.object(second, "scalar", return_value=None):
            with pytest.raises(DuplicateEvent):
                event_store.append(second, _event("evt_late"))
    finally:
        first.close()
        second.close()


def test_unit_of_work_serializes_same_tenant(file_sessions):
    with file_sessions() as session:
        tenant = Tenant(
            name="Race Corp",
            email="race@example.com",
            external_customer_id="cus_race",
            metadata_={"writes": 0},
        )
        session.add(tenant)
        session.commit()
        tenant_id = tenant.id

    locks = TenantLocks()
    active = []
    overlaps = []
    guard = threading.Lock()
    workers = 4
    barrier = threading.Barrier(workers)

    def write(_):
        session = file_sessions()
        try:
            barrier.wait()
            with LedgerStore(session, locks=locks).unit_of_work(tenant_id) as locked:
                with guard:
                    active.append(1)
                    overlaps.append(len(active))
                writes = locked.metadata_["writes"]
                time.sleep(0.05)
                locked.metadata_ = {"writes": writes + 1}
                with guard:
                    active.pop()
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=workers) as executor:
        list(executor.map(write, range(workers)))

    assert max(overlaps) == 1
    with file_sessions() as session:
        assert session.get(Tenant, tenant_id).metadata_ == {"writes": workers}


def test_tenant_locks_are_one_per_tenant():
    locks = TenantLocks()
    first, second = uuid.uuid4(), uuid.uuid4()
    assert locks.get(first) is locks.get(first)
    assert locks.get(first) is not locks.get(second)
    assert len(locks._locks) == 2
