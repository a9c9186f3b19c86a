from billing_engine.services.billing.event_store import (
    EventStore,
    ProcessingOutcome,
    event_store,
)
from billing_engine.services.billing.ledger import LedgerStore, TenantLocks, tenant_locks
from billing_engine.services.billing.lifecycle import (
    SubscriptionLifecycle,
    Trigger,
    add_period,
    lifecycle,
)
from billing_engine.services.billing.reconciliation import InvoiceReconciler, reconciler
from billing_engine.services.billing.usage import UsageAggregator, usage_aggregator
from billing_engine.services.billing.events import EVENT_TYPES, parse_event
from billing_engine.services.billing.documents import (
    InvoiceDocumentStore,
    LoggingDocumentStore,
    build_invoice_document,
)
from billing_engine.services.billing.processor import EventProcessor

__all__ = [
    "EVENT_TYPES",
    "EventProcessor",
    "EventStore",
    "InvoiceDocumentStore",
    "InvoiceReconciler",
    "LedgerStore",
    "LoggingDocumentStore",
    "ProcessingOutcome",
    "SubscriptionLifecycle",
    "TenantLocks",
    "Trigger",
    "UsageAggregator",
    "add_period",
    "build_invoice_document",
    "event_store",
    "lifecycle",
    "parse_event",
    "reconciler",
    "tenant_locks",
    "usage_aggregator",
]
