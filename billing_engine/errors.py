"""Billing error taxonomy and structured HTTP error handlers.

Every error response includes a consistent envelope:
    {
        "code": "error_code",
        "message": "Human-readable message",
        "details": null | object,
        "request_id": "uuid"
    }
"""
from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ── Engine errors ────────────────────────────────────────


class BillingError(Exception):
    """Base class for reconciliation engine errors."""

    code = "billing_error"
    status_code = 400

    def __init__(self, message: str, *, details: object = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class DuplicateEvent(BillingError):
    """The provider event id is already stored. Benign: skip reprocessing."""

    code = "duplicate_event"
    status_code = 200

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Event {event_id} already received")
        self.event_id = event_id


class MalformedEvent(BillingError):
    """Payload cannot be parsed into an action. Needs manual review."""

    code = "malformed_event"
    status_code = 422


class TransientStoreError(BillingError):
    """The store is unavailable or timed out. Safe to retry."""

    code = "store_unavailable"
    status_code = 503


class PermanentApplyError(BillingError):
    """A business rule rejected the event. Recorded, never retried."""

    code = "apply_rejected"
    status_code = 409


class EntityNotFound(PermanentApplyError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, reference: object) -> None:
        super().__init__(f"{entity} not found: {reference}")
        self.entity = entity
        self.reference = reference


class InvalidTransition(PermanentApplyError):
    code = "invalid_transition"

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"Cannot transition {entity} from {current} to {target}")
        self.current = current
        self.target = target


class OverpaymentRejected(PermanentApplyError):
    code = "overpayment_rejected"


class RefundExceedsPayment(PermanentApplyError):
    code = "refund_exceeds_payment"


class PeriodAlreadyInvoiced(PermanentApplyError):
    code = "period_already_invoiced"


class InvariantViolation(BillingError):
    """A ledger invariant failed; the unit of work must roll back."""

    code = "invariant_violation"
    status_code = 500


# ── HTTP handlers ────────────────────────────────────────


def _get_request_id(request: Request) -> str:
    """Extract request_id set by ObservabilityMiddleware."""
    return getattr(request.state, "request_id", "unknown")


def _error_payload(
    code: str, message: str, details: object, request_id: str
) -> dict:
    return {
        "code": code,
        "message": message,
        "details": details,
        "request_id": request_id,
    }


def register_error_handlers(app: object) -> None:
    @app.exception_handler(BillingError)  # type: ignore[arg-type]
    async def billing_error_handler(
        request: Request, exc: BillingError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Billing error on %s %s: %s",
            request.method,
            request.url.path,
            exc.message,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details, request_id),
        )

    @app.exception_handler(HTTPException)  # type: ignore[arg-type]
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details, request_id),
        )

    @app.exception_handler(RequestValidationError)  # type: ignore[arg-type]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error",
                "Validation error",
                exc.errors(),
                request_id,
            ),
        )

    @app.exception_handler(Exception)  # type: ignore[arg-type]
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error",
                "Internal server error",
                None,
                request_id,
            ),
        )
