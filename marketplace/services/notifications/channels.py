"""
AWS SES (email) and SNS (SMS) delivery channels.

Sends run inside Celery workers, so they are plain blocking boto3 calls.
Throttling and connection errors get a short in-process retry; what is
still failing after that surfaces as a ``ChannelError`` for the task to
retry from the queue. Permanent rejections fail immediately and are marked
``permanent`` so the task does not retry them.
"""

import time
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from marketplace.core.config import Settings, get_settings
from marketplace.core.logging import get_logger

logger = get_logger(__name__)

PERMANENT_SES_ERRORS = frozenset(
    {"MessageRejected", "MailFromDomainNotVerified", "ConfigurationSetDoesNotExist"}
)
PERMANENT_SNS_ERRORS = frozenset({"InvalidParameter", "OptedOut", "AuthorizationError"})


class ChannelError(Exception):
    """Base exception for delivery channel errors."""

    def __init__(
        self, message: str, service: str, permanent: bool = False, **context: Any
    ) -> None:
        super().__init__(message)
        self.service = service
        self.permanent = permanent
        self.context = context


class SESChannelError(ChannelError):
    def __init__(self, message: str, permanent: bool = False, **context: Any) -> None:
        super().__init__(message, service="SES", permanent=permanent, **context)


class SNSChannelError(ChannelError):
    def __init__(self, message: str, permanent: bool = False, **context: Any) -> None:
        super().__init__(message, service="SNS", permanent=permanent, **context)


def _boto_client(service: str, settings: Settings) -> Any:
    return boto3.client(
        service,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        region_name=settings.aws_region,
    )


def _call_with_retry(
    operation: Callable[[], dict[str, Any]],
    *,
    max_retries: int,
    retry_backoff: float,
    permanent_errors: frozenset[str],
    error_cls: type[ChannelError],
    **log_context: Any,
) -> dict[str, Any]:
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries):
        try:
            return operation()
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code in permanent_errors:
                raise error_cls(
                    f"Delivery rejected: {error_code}",
                    permanent=True,
                    error_code=error_code,
                    **log_context,
                ) from e
            last_exception = e
            logger.warning(
                "Channel client error, will retry",
                attempt=attempt + 1,
                error_code=error_code,
                **log_context,
            )
        except BotoCoreError as e:
            last_exception = e
            logger.warning(
                "Channel connection error, will retry",
                attempt=attempt + 1,
                error=str(e),
                **log_context,
            )

        if attempt < max_retries - 1:
            time.sleep(retry_backoff * (2**attempt))

    raise error_cls(
        f"Delivery failed after {max_retries} attempts",
        last_error=str(last_exception),
        **log_context,
    ) from last_exception


class SESEmailChannel:
    """Sends email through AWS SES."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Any = None,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _boto_client("ses", self.settings)
        return self._client

    def send_email(
        self,
        to_address: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> str:
        """
        Send one email and return the SES message id.

        Raises:
            SESChannelError: If delivery is rejected or retries run out
        """
        body: dict[str, Any] = {"Html": {"Data": body_html, "Charset": "UTF-8"}}
        if body_text:
            body["Text"] = {"Data": body_text, "Charset": "UTF-8"}

        response = _call_with_retry(
            lambda: self.client.send_email(
                Source=self.settings.ses_from_email,
                Destination={"ToAddresses": [to_address]},
                Message={"Subject": {"Data": subject, "Charset": "UTF-8"}, "Body": body},
            ),
            max_retries=self.max_retries,
            retry_backoff=self.retry_backoff,
            permanent_errors=PERMANENT_SES_ERRORS,
            error_cls=SESChannelError,
            to_address=to_address,
        )
        message_id = response["MessageId"]
        logger.info("Email sent", to_address=to_address, message_id=message_id)
        return message_id


class SNSSmsChannel:
    """Sends transactional SMS through AWS SNS."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Any = None,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _boto_client("sns", self.settings)
        return self._client

    def send_sms(self, phone_number: str, message: str) -> str:
        """
        Publish one SMS and return the SNS message id.

        Raises:
            SNSChannelError: If delivery is rejected or retries run out
        """
        response = _call_with_retry(
            lambda: self.client.publish(
                PhoneNumber=phone_number,
                Message=message,
                MessageAttributes={
                    "AWS.SNS.SMS.SMSType": {
                        "DataType": "String",
                        "StringValue": "Transactional",
                    }
                },
            ),
            max_retries=self.max_retries,
            retry_backoff=self.retry_backoff,
            permanent_errors=PERMANENT_SNS_ERRORS,
            error_cls=SNSChannelError,
            phone_number=phone_number,
        )
        message_id = response["MessageId"]
        logger.info("SMS sent", message_id=message_id)
        return message_id
