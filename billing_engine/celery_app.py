from datetime import timedelta

from celery import Celery

from billing_engine.config import settings

celery_app = Celery(
    "billing_engine",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["billing_engine.tasks"],
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    timezone="UTC",
    beat_schedule={
        "sweep_unprocessed_events": {
            "task": "billing_engine.tasks.sweep_unprocessed_events",
            "schedule": timedelta(seconds=max(settings.sweep_interval_seconds, 1)),
        },
    },
)
