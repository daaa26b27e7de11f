from celery import Celery
from celery.schedules import crontab

from autoflow.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "autoflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["autoflow.automations.tasks"],
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "automation-ledger-retention-sweep": {
            "task": "autoflow.automations.sweep_ledger",
            "schedule": crontab(minute=0, hour=3),
        },
        "automation-overdue-recovery": {
            "task": "autoflow.automations.recover_overdue",
            "schedule": float(max(60, settings.overdue_grace_seconds)),
        },
    },
)
