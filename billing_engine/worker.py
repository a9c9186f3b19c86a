"""Event processing run loop.

Sweeps unprocessed events from the store and processes them on a thread
pool. Each event gets its own session. Stopping lets in-flight events finish
and leaves everything else unprocessed for the next run.

Usage:
    python -m billing_engine.worker --workers 4
"""
from __future__ import annotations

import argparse
import logging
import signal
import threading
from concurrent.futures import Executor, ThreadPoolExecutor, wait
from uuid import UUID

from sqlalchemy.orm import Session

from billing_engine.config import settings
from billing_engine.models.billing import WebhookEvent
from billing_engine.services.billing.event_store import (
    RETRYABLE_STATUSES,
    ProcessingOutcome,
    event_store,
)
from billing_engine.services.billing.processor import EventProcessor

logger = logging.getLogger(__name__)


class EventWorker:
    def __init__(
        self,
        session_factory=None,
        workers: int | None = None,
        batch_size: int | None = None,
        poll_seconds: float | None = None,
    ) -> None:
        if session_factory is None:
            from billing_engine.db import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.workers = max(workers or settings.worker_count, 1)
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_seconds = settings.worker_poll_seconds if poll_seconds is None else poll_seconds
        self._stop = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Worker stop requested; draining in-flight events")
        self._stop.set()

    def _pending_ids(self) -> list[UUID]:
        db: Session = self.session_factory()
        try:
            return [item.id for item in event_store.list_unprocessed(db, self.batch_size)]
        finally:
            db.close()

    def process_one(self, item_id: UUID) -> ProcessingOutcome | None:
        db: Session = self.session_factory()
        try:
            item = db.get(WebhookEvent, item_id)
            if item is None or item.processed or item.status not in RETRYABLE_STATUSES:
                return None
            return EventProcessor(db).process(item)
        except Exception:
            logger.exception("Worker failed on event row %s", item_id)
            return None
        finally:
            db.close()

    def sweep(self, executor: Executor | None = None) -> int:
        """Process one batch. Returns the number of events attempted."""
        ids = self._pending_ids()
        if not ids:
            return 0
        attempted = 0
        if executor is None:
            for item_id in ids:
                if self.stopping:
                    break
                self.process_one(item_id)
                attempted += 1
            return attempted
        futures = []
        for item_id in ids:
            if self.stopping:
                break
            futures.append(executor.submit(self.process_one, item_id))
        wait(futures)
        logger.info("Sweep processed %d events", len(futures), extra={"worker": threading.current_thread().name})
        return len(futures)

    def run(self, stop_event: threading.Event | None = None) -> None:
        if stop_event is not None:
            self._stop = stop_event
        logger.info("Event worker started with %d threads", self.workers)
        with ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="billing-worker"
        ) as executor:
            while not self.stopping:
                attempted = self.sweep(executor)
                if attempted == 0:
                    self._stop.wait(self.poll_seconds)
        logger.info("Event worker stopped")


def main(argv: list[str] | None = None) -> None:
    from billing_engine.logging import configure_logging

    parser = argparse.ArgumentParser(description="Process unprocessed billing events.")
    parser.add_argument("--workers", type=int, default=settings.worker_count)
    parser.add_argument("--batch-size", type=int, default=settings.worker_batch_size)
    parser.add_argument("--poll-seconds", type=float, default=settings.worker_poll_seconds)
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit.")
    args = parser.parse_args(argv)

    configure_logging()
    worker = EventWorker(
        workers=args.workers,
        batch_size=args.batch_size,
        poll_seconds=args.poll_seconds,
    )
    if args.once:
        count = worker.sweep()
        logger.info("Single sweep attempted %d events", count)
        return

    def _handle_signal(signum, frame):  # noqa: ARG001
        worker.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    worker.run()


if __name__ == "__main__":
    main()
