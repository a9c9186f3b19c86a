"""Invoice document store interface.

Rendering and storing invoice documents happens outside the engine. The
processor hands every finalized invoice to ``submit`` after the ledger
transaction commits.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from billing_engine.models.billing import Invoice, InvoiceStatus
from billing_engine.services.common import as_utc

logger = logging.getLogger(__name__)


def _iso(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def build_invoice_document(invoice: Invoice) -> dict:
    """Snapshot of a finalized invoice as plain JSON-compatible data."""
    return {
        "invoice_id": str(invoice.id),
        "invoice_number": invoice.invoice_number,
        "tenant_id": str(invoice.tenant_id),
        "subscription_id": str(invoice.subscription_id) if invoice.subscription_id else None,
        "external_id": invoice.external_id,
        "status": InvoiceStatus(invoice.status).value,
        "currency": invoice.currency,
        "amount_due": str(invoice.amount_due),
        "amount_paid": str(invoice.amount_paid),
        "amount_remaining": str(invoice.amount_remaining),
        "due_date": _iso(invoice.due_date),
        "period_start": _iso(invoice.period_start),
        "period_end": _iso(invoice.period_end),
        "line_items": list(invoice.line_items or []),
    }


class InvoiceDocumentStore(ABC):
    """Abstract interface for the external document service."""

    @abstractmethod
    def submit(self, document: dict) -> None:
        """Accept finalized invoice data for rendering and storage."""


class LoggingDocumentStore(InvoiceDocumentStore):
    """Default store: records the hand-off in the log only."""

    def submit(self, document: dict) -> None:
        logger.info(
            "Invoice %s ready for document generation",
            document.get("invoice_number"),
            extra={"tenant_id": document.get("tenant_id")},
        )


def get_document_store() -> InvoiceDocumentStore:
    return LoggingDocumentStore()
