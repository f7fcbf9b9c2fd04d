"""Celery app for scheduled backfill and watch renewal. Uses Redis; DB session per task."""
import logging

from celery import Celery
from celery.schedules import crontab

from .config import settings

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

celery_app = Celery(
    "mailmirror",
    broker=settings.celery_broker,
    backend=settings.redis_url,
    include=["mailmirror.tasks"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "backfill-step": {
            "task": "mailmirror.tasks.run_backfill_step",
            "schedule": float(settings.backfill_interval_s),
        },
        "renew-gmail-watches": {
            "task": "mailmirror.tasks.renew_gmail_watches",
            "schedule": crontab(minute=0),
        },
    },
)
