"""Fulfillment — Celery worker configuration."""
from celery import Celery

from fulfillment.config import get_settings

settings = get_settings()

celery_app = Celery(
    "fulfillment",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
    include=["fulfillment.tasks.procurement_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_retry_delay=60,
    task_max_retries=3,
    task_routes={
        "fulfillment.tasks.*": {"queue": "procurement"},
    },
)

# Celery Beat schedule
celery_app.conf.beat_schedule = {
    "recover-stalled-material-orders-5m": {
        "task": "fulfillment.tasks.procurement_tasks.recover_stalled_orders",
        "schedule": 300.0,  # every 5 minutes
    },
}
