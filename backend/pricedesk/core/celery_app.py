"""Celery application configuration."""

from celery import Celery

from pricedesk.core.config import settings

celery_app = Celery(
    "pricedesk",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "billing-rollover-expired-periods": {
            "task": "billing.rollover_expired_periods",
            "schedule": 3600.0,
        },
    },
)

celery_app.autodiscover_tasks(["pricedesk.modules.billing"])
