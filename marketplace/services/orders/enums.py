"""Order status, payment method and transition tables.

This module is the single source of truth for which status changes an order
may make and for how each status relates to stock. Every component that
changes an order's status consults these tables.
"""

from enum import Enum
from typing import Dict, Set


class OrderStatus(str, Enum):
    """Order lifecycle status.

    Valid transitions:
    - PENDING -> PAID, CANCELLED
    - CONFIRMED -> SHIPPED, PAID, CANCELLED
    - PAID -> SHIPPED, CANCELLED
    - SHIPPED -> DELIVERED, PAID (cash collected after shipment)
    - DELIVERED -> PAID (cash collected on delivery)
    - CANCELLED -> (terminal state)
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid order status: {value}. Valid values are: {valid_values}"
            ) from None

    def is_terminal(self) -> bool:
        return self == OrderStatus.CANCELLED

    def can_cancel(self) -> bool:
        """Check if the buyer may cancel from this status."""
        return self in {OrderStatus.PENDING, OrderStatus.CONFIRMED}

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class PaymentMethod(str, Enum):
    """Closed set of payment methods a buyer can choose."""

    CASH_ON_DELIVERY = "cash_on_delivery"
    ECOCASH = "ecocash"
    BANK_TRANSFER = "bank_transfer"
    PAYNOW = "paynow"

    @classmethod
    def from_string(cls, value: str) -> "PaymentMethod":
        """Convert string to PaymentMethod enum.

        Accepts the display spellings used by storefront clients
        (e.g. ``"Cash on Delivery"``, ``"EcoCash"``).

        Raises:
            ValueError: If value names no known method
        """
        normalized = value.strip().lower().replace(" ", "_").replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            valid_values = ", ".join(m.value for m in cls)
            raise ValueError(
                f"Invalid payment method: {value}. Valid values are: {valid_values}"
            ) from None

    @property
    def category(self) -> "PaymentCategory":
        return PAYMENT_METHOD_CATEGORIES[self]

    @property
    def display_name(self) -> str:
        return _PAYMENT_METHOD_DISPLAY_NAMES[self]


class PaymentCategory(str, Enum):
    """How a payment method settles, which decides its stock behaviour."""

    CASH_ON_DELIVERY = "cash_on_delivery"
    MANUAL_TRANSFER = "manual_transfer"
    GATEWAY = "gateway"


class PaymentSource(str, Enum):
    """Which signal moved an order to PAID, recorded for audit."""

    GATEWAY_CALLBACK = "gateway_callback"
    GATEWAY_POLL = "gateway_poll"
    MANUAL = "manual"
    STATUS_UPDATE = "status_update"


class TransitionSource(str, Enum):
    """Origin of a status history entry."""

    INTAKE = "intake"
    GATEWAY_CALLBACK = "gateway_callback"
    GATEWAY_POLL = "gateway_poll"
    MANUAL = "manual"
    STATUS_UPDATE = "status_update"
    BUYER_CANCEL = "buyer_cancel"
    PAYMENT_METHOD_SWITCH = "payment_method_switch"
    REFUND = "refund"


class UserRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


PAYMENT_METHOD_CATEGORIES: Dict[PaymentMethod, PaymentCategory] = {
    PaymentMethod.CASH_ON_DELIVERY: PaymentCategory.CASH_ON_DELIVERY,
    PaymentMethod.ECOCASH: PaymentCategory.MANUAL_TRANSFER,
    PaymentMethod.BANK_TRANSFER: PaymentCategory.MANUAL_TRANSFER,
    PaymentMethod.PAYNOW: PaymentCategory.GATEWAY,
}

_PAYMENT_METHOD_DISPLAY_NAMES: Dict[PaymentMethod, str] = {
    PaymentMethod.CASH_ON_DELIVERY: "Cash on Delivery",
    PaymentMethod.ECOCASH: "EcoCash",
    PaymentMethod.BANK_TRANSFER: "Bank Transfer",
    PaymentMethod.PAYNOW: "Paynow",
}


ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
    },
    OrderStatus.CONFIRMED: {
        OrderStatus.SHIPPED,
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PAID: {
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.SHIPPED: {
        OrderStatus.DELIVERED,
        OrderStatus.PAID,
    },
    OrderStatus.DELIVERED: {
        OrderStatus.PAID,
    },
    OrderStatus.CANCELLED: set(),
}

# Re-routing edges, used only by a payment method switch made before any
# payment signal has landed. Status updates never consult this table.
PAYMENT_METHOD_SWITCH_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED},
    OrderStatus.CONFIRMED: {OrderStatus.PENDING},
}

STOCK_HOLDING_STATUSES: frozenset[OrderStatus] = frozenset(
    {
        OrderStatus.CONFIRMED,
        OrderStatus.PAID,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    }
)

# Statuses in which the buyer's money has been received, provided paid_at is set.
MONEY_RECEIVED_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED}
)

# Statuses still awaiting a shipment action from the seller.
AWAITING_SHIPMENT_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PAID}
)


def get_allowed_order_transitions(current: OrderStatus) -> Set[OrderStatus]:
    """Get all allowed transitions from current order status."""
    return ORDER_STATUS_TRANSITIONS.get(current, set()).copy()


def holds_stock(status: OrderStatus) -> bool:
    """Whether an order in ``status`` has its items deducted from stock."""
    return status in STOCK_HOLDING_STATUSES


def stock_delta(current: OrderStatus, new: OrderStatus) -> int:
    """Stock effect of moving from ``current`` to ``new``.

    Returns:
        1 if items must be deducted, -1 if they must be returned to stock,
        0 if the transition has no stock effect
    """
    return int(holds_stock(new)) - int(holds_stock(current))
