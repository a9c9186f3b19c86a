"""Durable, deduplicated record of inbound provider events."""
import enum
import logging

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.config import settings
from billing_engine.errors import DuplicateEvent, TransientStoreError
from billing_engine.models.billing import WebhookEvent, WebhookEventStatus
from billing_engine.schemas.billing import ProviderEvent
from billing_engine.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    utcnow,
    validate_enum,
)
from billing_engine.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (WebhookEventStatus.pending, WebhookEventStatus.failed)


class ProcessingOutcome(str, enum.Enum):
    processed = "processed"
    ignored = "ignored"
    transient_failure = "transient_failure"
    malformed = "malformed"
    rejected = "rejected"


class EventStore(ListResponseMixin):
    @staticmethod
    def append(db: Session, event: ProviderEvent) -> WebhookEvent:
        """Store a new event. Raises DuplicateEvent if the id was seen before."""
        existing = db.scalar(
            select(WebhookEvent.id).where(WebhookEvent.event_id == event.id)
        )
        if existing is not None:
            raise DuplicateEvent(event.id)
        item = WebhookEvent(
            event_id=event.id,
            event_type=event.type,
            source=event.source,
            payload=event.data,
            status=WebhookEventStatus.pending,
            processed=False,
            retry_count=0,
        )
        db.add(item)
        try:
            db.commit()
        except IntegrityError as exc:
            # Lost the insert race to a concurrent delivery of the same event.
            db.rollback()
            raise DuplicateEvent(event.id) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise TransientStoreError(f"Could not store event {event.id}") from exc
        db.refresh(item)
        logger.info(
            "Stored webhook event %s (%s)",
            item.event_id,
            item.event_type,
            extra={"event_id": item.event_id, "event_type": item.event_type},
        )
        return item

    @staticmethod
    def mark_processed(
        db: Session,
        item: WebhookEvent,
        outcome: ProcessingOutcome,
        error: str | None = None,
        *,
        commit: bool = True,
    ) -> WebhookEvent:
        """Record the outcome of a processing attempt.

        With ``commit=False`` the change joins the caller's open transaction.
        """
        if outcome in (ProcessingOutcome.processed, ProcessingOutcome.ignored):
            item.status = WebhookEventStatus.processed
            item.processed = True
            item.processed_at = utcnow()
            item.error_message = None
        elif outcome == ProcessingOutcome.rejected:
            item.status = WebhookEventStatus.rejected
            item.processed = True
            item.processed_at = utcnow()
            item.error_message = error
        elif outcome == ProcessingOutcome.malformed:
            item.status = WebhookEventStatus.quarantined
            item.processed = False
            item.error_message = error
        else:
            item.retry_count = (item.retry_count or 0) + 1
            item.processed = False
            item.error_message = error
            if item.retry_count >= settings.event_max_retries:
                item.status = WebhookEventStatus.escalated
                logger.error(
                    "Webhook event %s escalated after %d attempts: %s",
                    item.event_id,
                    item.retry_count,
                    error,
                    extra={"event_id": item.event_id, "retry_count": item.retry_count},
                )
            else:
                item.status = WebhookEventStatus.failed
        item.updated_at = utcnow()
        if not commit:
            return item
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise TransientStoreError(
                f"Could not record outcome for event {item.event_id}"
            ) from exc
        db.refresh(item)
        return item

    @staticmethod
    def list_unprocessed(db: Session, limit: int) -> list[WebhookEvent]:
        """Pending and transiently failed events, oldest first."""
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.processed.is_(False),
                WebhookEvent.status.in_(RETRYABLE_STATUSES),
            )
            .order_by(WebhookEvent.created_at.asc())
            .limit(limit)
        )
        return list(db.scalars(stmt).all())

    @staticmethod
    def get(db: Session, item_id: str) -> WebhookEvent:
        item = db.get(WebhookEvent, coerce_uuid(item_id))
        if not item:
            raise HTTPException(status_code=404, detail="Webhook event not found")
        return item

    @staticmethod
    def get_by_event_id(db: Session, event_id: str) -> WebhookEvent | None:
        return db.scalar(select(WebhookEvent).where(WebhookEvent.event_id == event_id))

    @staticmethod
    def list(
        db: Session,
        source: str | None,
        event_type: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[WebhookEvent], int]:
        query = db.query(WebhookEvent)
        if source:
            query = query.filter(WebhookEvent.source == source)
        if event_type:
            query = query.filter(WebhookEvent.event_type == event_type)
        if status:
            query = query.filter(
                WebhookEvent.status
                == validate_enum(status, WebhookEventStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": WebhookEvent.created_at,
                "retry_count": WebhookEvent.retry_count,
            },
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total

    @staticmethod
    def requeue(db: Session, item_id: str) -> WebhookEvent:
        """Operator action: send a quarantined or escalated event back to the sweep."""
        item = EventStore.get(db, item_id)
        if item.processed:
            raise HTTPException(
                status_code=409, detail="Processed events cannot be requeued"
            )
        item.status = WebhookEventStatus.pending
        db.commit()
        db.refresh(item)
        logger.info(
            "Requeued webhook event %s",
            item.event_id,
            extra={"event_id": item.event_id, "retry_count": item.retry_count},
        )
        return item


event_store = EventStore()
