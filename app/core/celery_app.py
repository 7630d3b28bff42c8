from __future__ import annotations

from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery = Celery(
    "wabridge",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.tasks.dispatch_tasks", "app.tasks.maintenance_tasks"],
)

celery.conf.update(
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    task_eager_propagates=True,
    task_default_queue="default",
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # at-least-once: ack after the handler returns, one job in flight per worker process
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # lets cancel tell a running job (STARTED) from a waiting one (PENDING)
    task_track_started=True,
    result_expires=settings.JOB_RESULT_TTL_SECONDS,
    task_routes={
        "app.tasks.dispatch_tasks.verify_*": {"queue": "verifier"},
        "app.tasks.dispatch_tasks.send_*": {"queue": "send"},
        "app.tasks.dispatch_tasks.*_campaign": {"queue": "campaign"},
        "app.tasks.dispatch_tasks.*_shipment": {"queue": "campaign"},
        "app.tasks.dispatch_tasks.resolve_contact_lid": {"queue": "retry"},
        "app.tasks.dispatch_tasks.restart_session": {"queue": "retry"},
    },
    beat_schedule={
        "verify-schedules": {
            "task": "app.tasks.dispatch_tasks.verify_schedules",
            "schedule": crontab(minute="*"),
        },
        "verify-reminders": {
            "task": "app.tasks.dispatch_tasks.verify_reminders",
            "schedule": crontab(minute="*"),
        },
        "verify-campaigns": {
            "task": "app.tasks.dispatch_tasks.verify_campaigns",
            "schedule": timedelta(seconds=settings.VERIFY_CAMPAIGNS_EVERY_SECONDS),
        },
        "cleanup-finished-jobs": {
            "task": "app.tasks.maintenance_tasks.cleanup_finished_jobs",
            "schedule": crontab(minute="*/15"),
        },
    },
)
