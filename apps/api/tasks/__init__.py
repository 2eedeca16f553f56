"""
Celery tasks for background processing.

Tasks are defined here and imported by both the API (to enqueue) and
the worker, started from this directory with `celery -A tasks worker --beat`.
"""
from celery import Celery
from core.config import settings

# Create Celery app instance
celery_app = Celery(
    "training_service",
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
    task_time_limit=10 * 60,  # 10 minutes max per task
    task_soft_time_limit=8 * 60,
)

from celerybeat_schedule import beat_schedule  # noqa: E402

celery_app.conf.beat_schedule = beat_schedule

# Import tasks to register them
from . import training_tasks  # noqa: E402

__all__ = ["celery_app"]
