"""
Tests for the SES and SNS delivery channels.

The boto3 clients are MagicMocks injected through the constructor; retry
backoff is zeroed.
"""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from marketplace.services.notifications.channels import (
    SESChannelError,
    SESEmailChannel,
    SNSChannelError,
    SNSSmsChannel,
)


def client_error(code: str, operation: str = "SendEmail") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def ses_client() -> MagicMock:
    client = MagicMock()
    client.send_email.return_value = {"MessageId": "ses-123"}
    return client


@pytest.fixture
def sns_client() -> MagicMock:
    client = MagicMock()
    client.publish.return_value = {"MessageId": "sns-456"}
    return client


@pytest.fixture
def email_channel(settings, ses_client) -> SESEmailChannel:
    return SESEmailChannel(settings, client=ses_client, max_retries=3, retry_backoff=0)


@pytest.fixture
def sms_channel(settings, sns_client) -> SNSSmsChannel:
    return SNSSmsChannel(settings, client=sns_client, max_retries=3, retry_backoff=0)


# ============================================================================
# SES
# ============================================================================


class TestSESEmailChannel:
    def test_send_email(self, email_channel, ses_client, settings):
        message_id = email_channel.send_email(
            "buyer@example.com", "Subject", "<p>Hi</p>", "Hi"
        )

        assert message_id == "ses-123"
        kwargs = ses_client.send_email.call_args.kwargs
        assert kwargs["Source"] == settings.ses_from_email
        assert kwargs["Destination"] == {"ToAddresses": ["buyer@example.com"]}
        assert kwargs["Message"]["Subject"]["Data"] == "Subject"
        assert kwargs["Message"]["Body"]["Text"]["Data"] == "Hi"

    def test_html_only_email(self, email_channel, ses_client):
        email_channel.send_email("buyer@example.com", "Subject", "<p>Hi</p>")

        body = ses_client.send_email.call_args.kwargs["Message"]["Body"]
        assert "Text" not in body

    def test_throttling_is_retried(self, email_channel, ses_client):
        ses_client.send_email.side_effect = [
            client_error("Throttling"),
            {"MessageId": "ses-retry"},
        ]

        assert email_channel.send_email("b@example.com", "s", "h") == "ses-retry"
        assert ses_client.send_email.call_count == 2

    def test_connection_errors_exhaust_retries(self, email_channel, ses_client):
        ses_client.send_email.side_effect = EndpointConnectionError(endpoint_url="https://ses")

        with pytest.raises(SESChannelError, match="after 3 attempts") as exc_info:
            email_channel.send_email("b@example.com", "s", "h")

        assert not exc_info.value.permanent
        assert ses_client.send_email.call_count == 3

    def test_rejection_is_not_retried(self, email_channel, ses_client):
        ses_client.send_email.side_effect = client_error("MessageRejected")

        with pytest.raises(SESChannelError) as exc_info:
            email_channel.send_email("b@example.com", "s", "h")

        assert exc_info.value.context["error_code"] == "MessageRejected"
        assert exc_info.value.service == "SES"
        assert exc_info.value.permanent
        assert ses_client.send_email.call_count == 1

    def test_client_built_lazily_from_settings(self, settings):
        with patch("marketplace.services.notifications.channels.boto3.client") as factory:
            channel = SESEmailChannel(settings)
            factory.assert_not_called()

            channel.client

        factory.assert_called_once_with(
            "ses",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )


# ============================================================================
# SNS
# ============================================================================


class TestSNSSmsChannel:
    def test_send_sms(self, sms_channel, sns_client):
        message_id = sms_channel.send_sms("+263771000001", "Order shipped")

        assert message_id == "sns-456"
        kwargs = sns_client.publish.call_args.kwargs
        assert kwargs["PhoneNumber"] == "+263771000001"
        assert kwargs["Message"] == "Order shipped"
        sms_type = kwargs["MessageAttributes"]["AWS.SNS.SMS.SMSType"]
        assert sms_type["StringValue"] == "Transactional"

    def test_opted_out_number_fails_fast(self, sms_channel, sns_client):
        sns_client.publish.side_effect = client_error("OptedOut", "Publish")

        with pytest.raises(SNSChannelError):
            sms_channel.send_sms("+263771000001", "hi")

        assert sns_client.publish.call_count == 1
