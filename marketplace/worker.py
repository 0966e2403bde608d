"""
Celery application for background notification delivery.

Run a worker with::

    celery -A marketplace.worker worker -Q notifications --loglevel=INFO

The web process only enqueues; rendering happens before the message is
queued, so workers need the channel credentials but no database access.
"""

from typing import Any

from celery import Celery
from celery.signals import setup_logging

from marketplace.core.config import get_settings
from marketplace.core.logging import configure_logging

settings = get_settings()

celery_app = Celery(
    "marketplace",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["marketplace.services.notifications.tasks"],
)

celery_app.conf.update(
    task_routes={
        "notifications.*": {"queue": "notifications"},
    },
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_ignore_result=settings.celery_result_backend is None,
    result_expires=60 * 60 * 24,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    task_always_eager=settings.celery_task_always_eager,
    worker_max_tasks_per_child=1000,
)


@setup_logging.connect
def configure_worker_logging(**kwargs: Any) -> None:
    """Use the application's structlog setup instead of Celery's own."""
    configure_logging()
