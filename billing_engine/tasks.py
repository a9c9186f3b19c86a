import logging

from billing_engine.celery_app import celery_app
from billing_engine.worker import EventWorker

logger = logging.getLogger(__name__)


@celery_app.task(name="billing_engine.tasks.sweep_unprocessed_events")
def sweep_unprocessed_events(batch_size: int | None = None) -> int:
    """Beat-driven sweep of pending and failed events, run serially."""
    attempted = EventWorker(workers=1, batch_size=batch_size).sweep()
    if attempted:
        logger.info("Celery sweep attempted %d events", attempted)
    return attempted
