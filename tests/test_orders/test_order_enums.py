"""
Tests for the order status and payment method tables.
"""

import pytest

from marketplace.services.orders.enums import (
    ORDER_STATUS_TRANSITIONS,
    PAYMENT_METHOD_SWITCH_TRANSITIONS,
    OrderStatus,
    PaymentCategory,
    PaymentMethod,
    get_allowed_order_transitions,
    holds_stock,
    stock_delta,
)


# ============================================================================
# Order status
# ============================================================================


class TestOrderStatus:
    def test_from_string_is_case_insensitive(self):
        assert OrderStatus.from_string(" Shipped ") == OrderStatus.SHIPPED

    def test_from_string_rejects_unknown_value(self):
        with pytest.raises(ValueError, match="Invalid order status"):
            OrderStatus.from_string("refunded")

    def test_only_cancelled_is_terminal(self):
        assert [s for s in OrderStatus if s.is_terminal()] == [OrderStatus.CANCELLED]

    @pytest.mark.parametrize(
        "status,expected",
        [
            (OrderStatus.PENDING, True),
            (OrderStatus.CONFIRMED, True),
            (OrderStatus.PAID, False),
            (OrderStatus.SHIPPED, False),
            (OrderStatus.DELIVERED, False),
            (OrderStatus.CANCELLED, False),
        ],
    )
    def test_buyer_can_cancel(self, status, expected):
        assert status.can_cancel() is expected


class TestTransitionTable:
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.PAID),
            (OrderStatus.PENDING, OrderStatus.CANCELLED),
            (OrderStatus.CONFIRMED, OrderStatus.SHIPPED),
            (OrderStatus.CONFIRMED, OrderStatus.PAID),
            (OrderStatus.CONFIRMED, OrderStatus.CANCELLED),
            (OrderStatus.PAID, OrderStatus.SHIPPED),
            (OrderStatus.PAID, OrderStatus.CANCELLED),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
            (OrderStatus.SHIPPED, OrderStatus.PAID),
            (OrderStatus.DELIVERED, OrderStatus.PAID),
        ],
    )
    def test_allowed_edges(self, current, target):
        assert target in ORDER_STATUS_TRANSITIONS[current]

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.SHIPPED),
            (OrderStatus.PENDING, OrderStatus.CONFIRMED),
            (OrderStatus.PAID, OrderStatus.PENDING),
            (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
            (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
            (OrderStatus.DELIVERED, OrderStatus.SHIPPED),
        ],
    )
    def test_forbidden_edges(self, current, target):
        assert target not in ORDER_STATUS_TRANSITIONS[current]

    def test_cancelled_has_no_outgoing_edges(self):
        for target in OrderStatus:
            assert target not in ORDER_STATUS_TRANSITIONS[OrderStatus.CANCELLED]

    def test_no_self_transitions(self):
        for status in OrderStatus:
            assert status not in ORDER_STATUS_TRANSITIONS[status]

    def test_allowed_transitions_are_a_copy(self):
        allowed = get_allowed_order_transitions(OrderStatus.PENDING)
        allowed.add(OrderStatus.SHIPPED)

        assert OrderStatus.SHIPPED not in ORDER_STATUS_TRANSITIONS[OrderStatus.PENDING]


class TestPaymentMethodSwitchTable:
    def test_reroutes_between_pending_and_confirmed(self):
        assert PAYMENT_METHOD_SWITCH_TRANSITIONS[OrderStatus.PENDING] == {OrderStatus.CONFIRMED}
        assert PAYMENT_METHOD_SWITCH_TRANSITIONS[OrderStatus.CONFIRMED] == {OrderStatus.PENDING}

    def test_switching_is_closed_once_paid(self):
        for status in (OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED):
            assert status not in PAYMENT_METHOD_SWITCH_TRANSITIONS

    def test_confirmed_to_pending_is_not_a_lifecycle_edge(self):
        assert OrderStatus.PENDING not in ORDER_STATUS_TRANSITIONS[OrderStatus.CONFIRMED]


# ============================================================================
# Stock effect
# ============================================================================


class TestStockEffect:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (OrderStatus.PENDING, False),
            (OrderStatus.CONFIRMED, True),
            (OrderStatus.PAID, True),
            (OrderStatus.SHIPPED, True),
            (OrderStatus.DELIVERED, True),
            (OrderStatus.CANCELLED, False),
        ],
    )
    def test_holds_stock(self, status, expected):
        assert holds_stock(status) is expected

    @pytest.mark.parametrize(
        "current,target,expected",
        [
            (OrderStatus.PENDING, OrderStatus.PAID, 1),
            (OrderStatus.PENDING, OrderStatus.CANCELLED, 0),
            (OrderStatus.CONFIRMED, OrderStatus.PAID, 0),
            (OrderStatus.CONFIRMED, OrderStatus.CANCELLED, -1),
            (OrderStatus.PAID, OrderStatus.CANCELLED, -1),
            (OrderStatus.SHIPPED, OrderStatus.PAID, 0),
            (OrderStatus.CONFIRMED, OrderStatus.PENDING, -1),
            (OrderStatus.PENDING, OrderStatus.CONFIRMED, 1),
        ],
    )
    def test_stock_delta(self, current, target, expected):
        assert stock_delta(current, target) == expected


# ============================================================================
# Payment methods
# ============================================================================


class TestPaymentMethod:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("cash_on_delivery", PaymentMethod.CASH_ON_DELIVERY),
            ("Cash on Delivery", PaymentMethod.CASH_ON_DELIVERY),
            ("EcoCash", PaymentMethod.ECOCASH),
            ("bank-transfer", PaymentMethod.BANK_TRANSFER),
            ("PAYNOW", PaymentMethod.PAYNOW),
        ],
    )
    def test_from_string_accepts_display_spellings(self, raw, expected):
        assert PaymentMethod.from_string(raw) == expected

    def test_from_string_rejects_unknown(self):
        with pytest.raises(ValueError, match="Invalid payment method"):
            PaymentMethod.from_string("bitcoin")

    def test_categories(self):
        assert PaymentMethod.CASH_ON_DELIVERY.category == PaymentCategory.CASH_ON_DELIVERY
        assert PaymentMethod.ECOCASH.category == PaymentCategory.MANUAL_TRANSFER
        assert PaymentMethod.BANK_TRANSFER.category == PaymentCategory.MANUAL_TRANSFER
        assert PaymentMethod.PAYNOW.category == PaymentCategory.GATEWAY

    def test_display_names(self):
        assert PaymentMethod.ECOCASH.display_name == "EcoCash"
        assert PaymentMethod.CASH_ON_DELIVERY.display_name == "Cash on Delivery"
