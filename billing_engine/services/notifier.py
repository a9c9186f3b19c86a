"""Notifier gateway: hands reconciliation outcomes to the delivery service.

Delivery itself is external. The engine never waits for confirmation; every
adapter returns ``"accepted"`` or ``"failed"`` and never raises.
"""
from __future__ import annotations

import logging
from typing import Literal, Protocol
from uuid import UUID

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.config import settings
from billing_engine.metrics import NOTIFICATIONS
from billing_engine.models.notification import (
    Notification,
    NotificationChannel,
    NotificationStatus,
)

logger = logging.getLogger(__name__)

NotifyResult = Literal["accepted", "failed"]


class NotifierGateway(Protocol):
    def notify(
        self,
        tenant_id: UUID,
        channel: str,
        subject: str,
        body: str,
        *,
        recipient: str | None = None,
    ) -> NotifyResult: ...


class OutboxNotifier:
    """Writes pending ``notifications`` rows for the delivery worker to pick up."""

    backend = "outbox"

    def __init__(self, db: Session) -> None:
        self.db = db

    def notify(
        self,
        tenant_id: UUID,
        channel: str,
        subject: str,
        body: str,
        *,
        recipient: str | None = None,
    ) -> NotifyResult:
        try:
            notification = Notification(
                tenant_id=tenant_id,
                channel=NotificationChannel(channel),
                recipient=recipient or str(tenant_id),
                subject=subject,
                body=body,
                status=NotificationStatus.pending,
                metadata_={},
            )
            self.db.add(notification)
            self.db.commit()
        except ValueError:
            logger.warning("Unsupported notification channel: %s", channel)
            NOTIFICATIONS.labels(self.backend, "failed").inc()
            return "failed"
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "Failed to queue notification for tenant %s",
                tenant_id,
                extra={"tenant_id": str(tenant_id)},
            )
            NOTIFICATIONS.labels(self.backend, "failed").inc()
            return "failed"
        logger.info(
            "Queued %s notification for tenant %s: %s",
            channel,
            tenant_id,
            subject,
            extra={"tenant_id": str(tenant_id)},
        )
        NOTIFICATIONS.labels(self.backend, "accepted").inc()
        return "accepted"


class WebhookNotifier:
    """POSTs each notification as JSON to an external dispatcher."""

    backend = "webhook"

    def __init__(self, url: str | None = None, timeout: float | None = None) -> None:
        self._url = url if url is not None else settings.notifier_webhook_url
        self._timeout = timeout if timeout is not None else settings.notifier_timeout_seconds

    def is_configured(self) -> bool:
        return bool(self._url)

    def notify(
        self,
        tenant_id: UUID,
        channel: str,
        subject: str,
        body: str,
        *,
        recipient: str | None = None,
    ) -> NotifyResult:
        if not self.is_configured():
            logger.warning("Webhook notifier has no URL configured")
            NOTIFICATIONS.labels(self.backend, "failed").inc()
            return "failed"
        payload = {
            "tenant_id": str(tenant_id),
            "channel": channel,
            "recipient": recipient,
            "subject": subject,
            "body": body,
        }
        try:
            with httpx.Client(timeout=self._timeout) as client:
                resp = client.post(self._url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Notifier webhook failed for tenant %s: %s",
                tenant_id,
                exc,
                extra={"tenant_id": str(tenant_id)},
            )
            NOTIFICATIONS.labels(self.backend, "failed").inc()
            return "failed"
        NOTIFICATIONS.labels(self.backend, "accepted").inc()
        return "accepted"


class NullNotifier:
    backend = "none"

    def notify(
        self,
        tenant_id: UUID,
        channel: str,
        subject: str,
        body: str,
        *,
        recipient: str | None = None,
    ) -> NotifyResult:
        logger.debug("Dropping notification for tenant %s: %s", tenant_id, subject)
        NOTIFICATIONS.labels(self.backend, "accepted").inc()
        return "accepted"


def build_notifier(db: Session) -> NotifierGateway:
    backend = settings.notifier_backend.lower()
    if backend == "webhook":
        return WebhookNotifier()
    if backend == "none":
        return NullNotifier()
    return OutboxNotifier(db)
