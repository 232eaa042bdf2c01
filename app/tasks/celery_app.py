"""
Celery application configuration.

Defines the Celery app with Redis broker, task autodiscovery, and the
beat schedule that drives queue maintenance.  The matching workers and
the outbox sender are long-running asyncio loops (scripts/run_worker.py),
not Celery tasks.
"""

from celery import Celery

from app.config import settings

celery_app = Celery(
    "swapflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
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
    broker_connection_retry_on_startup=True,
    # Maintenance reports are only inspected shortly after a run
    result_expires=3600,
)

# Auto-discover tasks in the tasks package
celery_app.autodiscover_tasks(["app.tasks"])

# Beat schedule: periodic maintenance
celery_app.conf.beat_schedule = {}
if settings.MATCHING_CRON_ENABLED:
    celery_app.conf.beat_schedule["run-matching-maintenance"] = {
        "task": "app.tasks.matching_tasks.run_maintenance",
        "schedule": settings.MATCHING_CRON_INTERVAL_SECONDS,
    }
