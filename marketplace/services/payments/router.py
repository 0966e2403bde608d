"""
Payment router.

Decides, for a chosen payment method, the status a new order starts in and
whether its stock is taken now or deferred until payment is confirmed, and
builds the instructions shown to the buyer after checkout.

| category          | initial status | stock     |
|-------------------|----------------|-----------|
| cash on delivery  | CONFIRMED      | now       |
| manual transfer   | PENDING        | deferred  |
| gateway           | PENDING        | deferred  |
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from marketplace.core.config import Settings, get_settings
from marketplace.core.logging import get_logger
from marketplace.services.orders.enums import (
    OrderStatus,
    PaymentCategory,
    PaymentMethod,
    holds_stock,
)

logger = get_logger(__name__)


class InvalidPaymentMethodError(Exception):
    """Raised when a payment method is unknown or not currently offered."""

    def __init__(self, method: Any, supported: list[str]):
        super().__init__(
            f"Invalid payment method: {method}. Supported methods: {', '.join(supported)}"
        )
        self.code = "INVALID_PAYMENT_METHOD"
        self.context = {"payment_method": str(method), "supported": supported}


class StockAction(str, Enum):
    DECREMENT_NOW = "decrement_now"
    DEFERRED = "deferred"


class InstructionKind(str, Enum):
    CASH_ON_DELIVERY = "cash_on_delivery"
    MANUAL_TRANSFER = "manual_transfer"
    REDIRECT = "redirect"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"


@dataclass(frozen=True)
class RoutingDecision:
    method: PaymentMethod
    initial_status: OrderStatus
    stock_action: StockAction

    @property
    def decrement_now(self) -> bool:
        return self.stock_action == StockAction.DECREMENT_NOW


@dataclass(frozen=True)
class PaymentInstruction:
    """What the buyer must do next to pay for an order."""

    kind: InstructionKind
    message: str
    redirect_url: Optional[str] = None
    details: dict[str, str] = field(default_factory=dict)


class PaymentRouter:
    """Maps payment methods to initial status, stock action and instructions."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def supported_methods(self) -> list[PaymentMethod]:
        methods = [
            PaymentMethod.CASH_ON_DELIVERY,
            PaymentMethod.ECOCASH,
            PaymentMethod.BANK_TRANSFER,
        ]
        if self.settings.gateway_enabled:
            methods.append(PaymentMethod.PAYNOW)
        return methods

    def parse_method(self, value: Union[str, PaymentMethod]) -> PaymentMethod:
        """
        Resolve a client-supplied method against the supported set.

        Raises:
            InvalidPaymentMethodError: If unknown or not offered
        """
        supported = self.supported_methods()
        try:
            method = value if isinstance(value, PaymentMethod) else PaymentMethod.from_string(value)
        except ValueError:
            method = None

        if method is None or method not in supported:
            logger.info("Payment method rejected", payment_method=str(value))
            raise InvalidPaymentMethodError(value, [m.value for m in supported])
        return method

    def route(self, method: PaymentMethod) -> RoutingDecision:
        if method.category == PaymentCategory.CASH_ON_DELIVERY:
            initial_status = OrderStatus.CONFIRMED
        else:
            initial_status = OrderStatus.PENDING

        stock_action = (
            StockAction.DECREMENT_NOW if holds_stock(initial_status) else StockAction.DEFERRED
        )
        return RoutingDecision(
            method=method,
            initial_status=initial_status,
            stock_action=stock_action,
        )

    def instructions(
        self,
        method: PaymentMethod,
        order_number: str,
        total_price: Decimal,
        redirect_url: Optional[str] = None,
    ) -> PaymentInstruction:
        """
        Buyer-facing payment instructions for a freshly created order.

        For the gateway a missing ``redirect_url`` means initiation failed;
        the order stays pending and the buyer is told to retry or switch.
        """
        amount = f"${Decimal(total_price):.2f}"
        s = self.settings

        if method.category == PaymentCategory.CASH_ON_DELIVERY:
            return PaymentInstruction(
                kind=InstructionKind.CASH_ON_DELIVERY,
                message=f"Please pay {amount} in cash upon delivery.",
            )

        if method.category == PaymentCategory.GATEWAY:
            if redirect_url:
                return PaymentInstruction(
                    kind=InstructionKind.REDIRECT,
                    message=f"Complete your payment of {amount} on the Paynow page.",
                    redirect_url=redirect_url,
                )
            return PaymentInstruction(
                kind=InstructionKind.GATEWAY_UNAVAILABLE,
                message=(
                    "We could not reach the payment gateway. Your order is saved; "
                    "retry payment later or switch to another payment method."
                ),
            )

        contact = {
            "whatsapp": s.payment_contact_whatsapp,
            "email": s.payment_contact_email,
            "reference": order_number,
        }
        if method == PaymentMethod.ECOCASH:
            details = {
                "account_name": s.ecocash_account_name,
                "ecocash_number": s.ecocash_number,
                **contact,
            }
            message = (
                f"Send {amount} via EcoCash to {s.ecocash_number} "
                f"({s.ecocash_account_name}) using reference {order_number}, "
                f"then send proof of payment to {s.payment_contact_whatsapp} "
                f"or {s.payment_contact_email}."
            )
        else:
            details = {
                "bank_name": s.bank_name,
                "account_name": s.bank_account_name,
                "account_number": s.bank_account_number,
                **contact,
            }
            message = (
                f"Transfer {amount} to {s.bank_name} account {s.bank_account_number} "
                f"({s.bank_account_name}) using reference {order_number}, "
                f"then send proof of payment to {s.payment_contact_whatsapp} "
                f"or {s.payment_contact_email}."
            )

        return PaymentInstruction(
            kind=InstructionKind.MANUAL_TRANSFER,
            message=message,
            details=details,
        )
