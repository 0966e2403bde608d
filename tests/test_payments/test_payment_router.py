"""
Tests for the payment router.
"""

from decimal import Decimal

import pytest

from marketplace.services.orders.enums import OrderStatus, PaymentMethod
from marketplace.services.payments.router import (
    InstructionKind,
    InvalidPaymentMethodError,
    PaymentRouter,
    StockAction,
)


@pytest.fixture
def router(settings) -> PaymentRouter:
    return PaymentRouter(settings)


class TestRoute:
    def test_cash_on_delivery_takes_stock_now(self, router):
        decision = router.route(PaymentMethod.CASH_ON_DELIVERY)

        assert decision.initial_status == OrderStatus.CONFIRMED
        assert decision.stock_action == StockAction.DECREMENT_NOW
        assert decision.decrement_now

    @pytest.mark.parametrize(
        "method", [PaymentMethod.ECOCASH, PaymentMethod.BANK_TRANSFER, PaymentMethod.PAYNOW]
    )
    def test_other_methods_defer_stock(self, router, method):
        decision = router.route(method)

        assert decision.initial_status == OrderStatus.PENDING
        assert decision.stock_action == StockAction.DEFERRED


class TestParseMethod:
    def test_accepts_enum_and_strings(self, router):
        assert router.parse_method(PaymentMethod.ECOCASH) == PaymentMethod.ECOCASH
        assert router.parse_method("Bank Transfer") == PaymentMethod.BANK_TRANSFER

    def test_gateway_offered_only_when_configured(self, settings):
        configured = PaymentRouter(settings)
        unconfigured = PaymentRouter(settings.model_copy(update={"paynow_integration_id": None}))

        assert PaymentMethod.PAYNOW in configured.supported_methods()
        assert PaymentMethod.PAYNOW not in unconfigured.supported_methods()
        with pytest.raises(InvalidPaymentMethodError):
            unconfigured.parse_method("paynow")

    def test_unknown_method_lists_supported(self, router):
        with pytest.raises(InvalidPaymentMethodError) as exc_info:
            router.parse_method("cheque")

        assert exc_info.value.code == "INVALID_PAYMENT_METHOD"
        assert exc_info.value.context["supported"] == [
            "cash_on_delivery",
            "ecocash",
            "bank_transfer",
            "paynow",
        ]


class TestInstructions:
    def test_cash_on_delivery(self, router):
        instruction = router.instructions(
            PaymentMethod.CASH_ON_DELIVERY, "ORD-1", Decimal("12.5")
        )

        assert instruction.kind == InstructionKind.CASH_ON_DELIVERY
        assert instruction.message == "Please pay $12.50 in cash upon delivery."

    def test_ecocash_uses_order_number_as_reference(self, router, settings):
        instruction = router.instructions(PaymentMethod.ECOCASH, "ORD-1", Decimal("12.50"))

        assert instruction.kind == InstructionKind.MANUAL_TRANSFER
        assert instruction.details["ecocash_number"] == settings.ecocash_number
        assert instruction.details["reference"] == "ORD-1"
        assert "using reference ORD-1" in instruction.message

    def test_gateway_with_redirect(self, router):
        instruction = router.instructions(
            PaymentMethod.PAYNOW, "ORD-1", Decimal("1"), redirect_url="https://pay"
        )

        assert instruction.kind == InstructionKind.REDIRECT
        assert instruction.redirect_url == "https://pay"

    def test_gateway_without_redirect_offers_alternatives(self, router):
        instruction = router.instructions(PaymentMethod.PAYNOW, "ORD-1", Decimal("1"))

        assert instruction.kind == InstructionKind.GATEWAY_UNAVAILABLE
        assert "switch to another payment method" in instruction.message
