"""
Celery tasks for notification delivery.

Messages are rendered before they are queued, so each task carries only the
address and the finished text. Transient channel failures are retried from
the queue with exponential backoff; permanent rejections (opted-out numbers,
rejected addresses) are logged and dropped.
"""

from functools import lru_cache
from typing import Any, Optional

from celery import Task
from celery.exceptions import MaxRetriesExceededError

from marketplace.core.config import get_settings
from marketplace.core.logging import get_logger
from marketplace.services.notifications.channels import (
    ChannelError,
    SESEmailChannel,
    SNSSmsChannel,
)
from marketplace.worker import celery_app

logger = get_logger(__name__)


@lru_cache
def get_email_channel() -> SESEmailChannel:
    # The queue owns retries; one in-process attempt per delivery.
    return SESEmailChannel(get_settings(), max_retries=1)


@lru_cache
def get_sms_channel() -> SNSSmsChannel:
    return SNSSmsChannel(get_settings(), max_retries=1)


class NotificationTask(Task):
    """
    Base task for notification deliveries.

    Logs every terminal outcome and each retry.
    """

    max_retries = 3

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Notification task failed",
            task=self.name,
            task_id=task_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.warning(
            "Notification task retrying",
            task=self.name,
            task_id=task_id,
            error=str(exc),
            retry_count=self.request.retries,
            max_retries=self.max_retries,
        )

    def on_success(self, retval: Any, task_id: str, args: tuple, kwargs: dict) -> None:
        logger.info("Notification task completed", task=self.name, task_id=task_id, result=retval)


def _retry_or_drop(task: Task, error: ChannelError, **log_context: Any) -> dict[str, Any]:
    if error.permanent:
        logger.error(
            "Notification rejected by channel, not retrying",
            task_id=task.request.id,
            service=error.service,
            error=str(error),
            **log_context,
        )
        return {"status": "rejected", "service": error.service, "error": str(error)}

    try:
        raise task.retry(exc=error, countdown=2**task.request.retries)
    except MaxRetriesExceededError:
        logger.error(
            "Max retries exceeded for notification",
            task_id=task.request.id,
            service=error.service,
            **log_context,
        )
        raise


@celery_app.task(
    bind=True,
    base=NotificationTask,
    name="notifications.send_email",
    time_limit=120,
    soft_time_limit=90,
)
def send_email_task(
    self: Task,
    to_address: str,
    subject: str,
    body_html: str,
    body_text: Optional[str] = None,
) -> dict[str, Any]:
    """
    Deliver one rendered email through SES.

    Returns:
        ``{"status": "sent", "message_id": ...}``, or ``{"status": "rejected"}``
        when SES refuses the message outright

    Raises:
        Retry: If delivery failed transiently and retries remain
    """
    try:
        message_id = get_email_channel().send_email(to_address, subject, body_html, body_text)
    except ChannelError as e:
        return _retry_or_drop(self, e, to_address=to_address)
    return {"status": "sent", "message_id": message_id}


@celery_app.task(
    bind=True,
    base=NotificationTask,
    name="notifications.send_sms",
    time_limit=60,
    soft_time_limit=45,
)
def send_sms_task(self: Task, phone_number: str, message: str) -> dict[str, Any]:
    """Deliver one rendered SMS through SNS."""
    try:
        message_id = get_sms_channel().send_sms(phone_number, message)
    except ChannelError as e:
        return _retry_or_drop(self, e)
    return {"status": "sent", "message_id": message_id}
