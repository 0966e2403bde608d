"""
Tests for the Paynow gateway client.

HTTP traffic is served by ``httpx.MockTransport`` so the real request
building, form parsing, hashing and retry logic run.
"""

import hashlib
from decimal import Decimal
from typing import Callable
from urllib.parse import parse_qsl, urlencode

import httpx
import pytest

from marketplace.services.payments.gateway import (
    GatewayConnectionError,
    GatewayInitiationError,
    GatewayNotConfiguredError,
    GatewaySignatureError,
    GatewayStatus,
    GatewayTimeoutError,
    PaynowGateway,
    compute_hash,
    verify_hash,
)

KEY = "test-integration-key"


def signed_reply(**fields: str) -> str:
    fields = dict(fields)
    fields["hash"] = compute_hash(fields, KEY)
    return urlencode(fields)


@pytest.fixture
def make_gateway(settings) -> Callable[[Callable[[httpx.Request], httpx.Response]], PaynowGateway]:
    """
    Build a gateway whose HTTP client is backed by ``handler``.

    Backoff is zeroed so retry tests run instantly.
    """

    def _make(handler, **overrides) -> PaynowGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        gw_settings = settings.model_copy(update=overrides) if overrides else settings
        return PaynowGateway(gw_settings, client=client, initial_backoff=0, max_backoff=0)

    return _make


# ============================================================================
# Hashing
# ============================================================================


class TestHash:
    def test_hash_is_uppercase_sha512_of_values_then_key(self):
        fields = {"reference": "ORD-1", "status": "Paid"}
        expected = hashlib.sha512(b"ORD-1Paid" + KEY.encode()).hexdigest().upper()

        assert compute_hash(fields, KEY) == expected

    def test_hash_field_is_excluded(self):
        fields = {"reference": "ORD-1", "status": "Paid"}
        with_hash = {**fields, "hash": "ignored"}

        assert compute_hash(fields, KEY) == compute_hash(with_hash, KEY)

    def test_verify_accepts_lowercase_hash(self):
        fields = {"reference": "ORD-1", "status": "Paid"}
        fields["hash"] = compute_hash(fields, KEY).lower()

        assert verify_hash(fields, KEY)

    def test_verify_rejects_tampered_fields(self):
        fields = {"reference": "ORD-1", "status": "Paid"}
        fields["hash"] = compute_hash(fields, KEY)
        fields["status"] = "Cancelled"

        assert not verify_hash(fields, KEY)

    def test_field_order_matters(self):
        a = {"reference": "ORD-1", "status": "Paid"}
        b = {"status": "Paid", "reference": "ORD-1"}

        assert compute_hash(a, KEY) != compute_hash(b, KEY)


# ============================================================================
# Status interpretation
# ============================================================================


class TestGatewayStatus:
    @pytest.mark.parametrize("raw", ["Paid", "Awaiting Delivery", "delivered"])
    def test_paid_statuses(self, raw):
        assert GatewayStatus(reference="r", status=raw).paid

    @pytest.mark.parametrize("raw", ["Created", "Sent"])
    def test_intermediate_statuses(self, raw):
        status = GatewayStatus(reference="r", status=raw)
        assert status.is_intermediate
        assert not status.failed

    @pytest.mark.parametrize("raw", ["Cancelled", "Failed", "Disputed", "Refunded"])
    def test_failed_statuses(self, raw):
        assert GatewayStatus(reference="r", status=raw).failed

    @pytest.mark.parametrize("raw", ["", "Pending Review", "unknown"])
    def test_unrecognised_statuses_are_not_failures(self, raw):
        status = GatewayStatus(reference="r", status=raw)

        assert not status.failed
        assert not status.paid


# ============================================================================
# Initiation
# ============================================================================


class TestInitiate:
    async def test_sends_signed_form_and_returns_urls(self, make_gateway, settings):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["form"] = dict(parse_qsl(request.content.decode()))
            return httpx.Response(
                200,
                text=signed_reply(
                    status="Ok",
                    browserurl="https://paynow.test/pay/1",
                    pollurl="https://paynow.test/poll/1",
                ),
            )

        gateway = make_gateway(handler)

        result = await gateway.initiate("ORD-1", "buyer@example.com", Decimal("20"), "Order ORD-1")

        assert result.redirect_url == "https://paynow.test/pay/1"
        assert result.poll_url == "https://paynow.test/poll/1"
        assert captured["url"] == settings.paynow_initiate_url
        form = captured["form"]
        assert form["id"] == "12345"
        assert form["reference"] == "ORD-1"
        assert form["amount"] == "20.00"
        assert form["authemail"] == "buyer@example.com"
        assert form["resulturl"] == settings.paynow_result_url
        assert verify_hash(form, KEY)

    async def test_error_reply_raises(self, make_gateway):
        gateway = make_gateway(
            lambda request: httpx.Response(200, text=urlencode({"status": "Error", "error": "Bad id"}))
        )

        with pytest.raises(GatewayInitiationError, match="Bad id"):
            await gateway.initiate("ORD-1", "b@example.com", Decimal("1"), "x")

    async def test_unsigned_reply_raises(self, make_gateway):
        gateway = make_gateway(
            lambda request: httpx.Response(
                200, text=urlencode({"status": "Ok", "browserurl": "u", "pollurl": "p", "hash": "00"})
            )
        )

        with pytest.raises(GatewayInitiationError) as exc_info:
            await gateway.initiate("ORD-1", "b@example.com", Decimal("1"), "x")

        assert exc_info.value.code == "GATEWAY_BAD_HASH"

    async def test_not_configured(self, make_gateway):
        gateway = make_gateway(
            lambda request: httpx.Response(500), paynow_integration_id=None
        )

        assert not gateway.enabled
        with pytest.raises(GatewayNotConfiguredError):
            await gateway.initiate("ORD-1", "b@example.com", Decimal("1"), "x")


# ============================================================================
# Polling
# ============================================================================


class TestPoll:
    async def test_returns_parsed_status(self, make_gateway):
        gateway = make_gateway(
            lambda request: httpx.Response(
                200,
                text=signed_reply(
                    reference="ORD-1",
                    paynowreference="PN-9",
                    amount="20.00",
                    status="Paid",
                    pollurl="https://paynow.test/poll/1",
                ),
            )
        )

        status = await gateway.poll("https://paynow.test/poll/1")

        assert status.reference == "ORD-1"
        assert status.external_reference == "PN-9"
        assert status.amount == Decimal("20.00")
        assert status.paid

    async def test_tampered_reply_raises(self, make_gateway):
        body = signed_reply(reference="ORD-1", status="Cancelled").replace("Cancelled", "Paid")
        gateway = make_gateway(lambda request: httpx.Response(200, text=body))

        with pytest.raises(GatewaySignatureError):
            await gateway.poll("https://paynow.test/poll/1")

    async def test_timeout_is_not_retried(self, make_gateway):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        gateway = make_gateway(handler, gateway_max_retries=3)

        with pytest.raises(GatewayTimeoutError):
            await gateway.poll("https://paynow.test/poll/1")

        assert len(calls) == 1

    async def test_connection_errors_are_retried(self, make_gateway):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, text=signed_reply(reference="ORD-1", status="Sent"))

        gateway = make_gateway(handler, gateway_max_retries=2)

        status = await gateway.poll("https://paynow.test/poll/1")

        assert status.is_intermediate
        assert len(calls) == 3

    async def test_connection_errors_exhaust_retries(self, make_gateway):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gateway = make_gateway(handler, gateway_max_retries=1)

        with pytest.raises(GatewayConnectionError) as exc_info:
            await gateway.poll("https://paynow.test/poll/1")

        assert exc_info.value.code == "GATEWAY_UNREACHABLE"

    async def test_http_error_status(self, make_gateway):
        gateway = make_gateway(lambda request: httpx.Response(503))

        with pytest.raises(GatewayConnectionError) as exc_info:
            await gateway.poll("https://paynow.test/poll/1")

        assert exc_info.value.context["status_code"] == 503


# ============================================================================
# Callbacks
# ============================================================================


class TestParseCallback:
    def test_valid_callback(self, settings):
        gateway = PaynowGateway(settings)
        fields = {"reference": "ORD-1", "paynowreference": "PN-1", "status": "Paid"}
        fields["hash"] = compute_hash(fields, KEY)

        status = gateway.parse_callback(fields)

        assert status.reference == "ORD-1"
        assert status.external_reference == "PN-1"
        assert status.raw["status"] == "Paid"

    def test_invalid_hash(self, settings):
        gateway = PaynowGateway(settings)

        with pytest.raises(GatewaySignatureError):
            gateway.parse_callback({"reference": "ORD-1", "status": "Paid", "hash": "ABC"})

    def test_unconfigured_gateway_rejects_callbacks(self, settings):
        gateway = PaynowGateway(settings.model_copy(update={"paynow_integration_key": None}))

        with pytest.raises(GatewayNotConfiguredError):
            gateway.parse_callback({"reference": "ORD-1", "status": "Paid"})
