"""Celery app — Redis broker, beat schedule for the engine's periodic sweeps.

Usage:
    celery -A sequencer.tasks.celery_app worker --beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from sequencer.config import get_settings

settings = get_settings()

celery_app = Celery(
    "sequencer",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["sequencer.tasks.engine_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "process-due-enrollments": {
            "task": "sequencer.tasks.engine_tasks.process_due_enrollments_task",
            "schedule": float(settings.process_interval_seconds),
        },
        "archive-inactive-nurture": {
            "task": "sequencer.tasks.engine_tasks.archive_inactive_nurture_task",
            "schedule": crontab(hour=3, minute=0),
        },
        "advance-nurture-cadence": {
            "task": "sequencer.tasks.engine_tasks.advance_nurture_cadence_task",
            "schedule": crontab(hour=4, minute=0),
        },
    },
)
