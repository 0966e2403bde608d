"""
Order service orchestrating intake and the buyer/seller/admin operations.

``OrderService`` is the entry point the API calls. It owns authorization
(who may touch which order), turns a cart into a durable order, and hands
every later status change to the ``ReconciliationEngine``. Notifications are
scheduled only after the change they describe has committed.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import Settings, get_settings
from marketplace.core.logging import get_logger
from marketplace.database.base import utcnow
from marketplace.database.models.order import Order
from marketplace.database.models.user import User
from marketplace.services.catalog.reader import CatalogReader
from marketplace.services.inventory.ledger import (
    InsufficientStockError,
    StockLedger,
    merge_lines,
)
from marketplace.services.notifications.dispatcher import (
    NotificationDispatcher,
    OrderNotice,
    Recipient,
)
from marketplace.services.orders.enums import (
    OrderStatus,
    PaymentCategory,
    PaymentMethod,
)
from marketplace.services.orders.repository import (
    OrderCreationError,
    OrderRepository,
    order_number_for,
)
from marketplace.services.orders.state_machine import OrderStateMachine
from marketplace.services.payments.gateway import PaynowGateway
from marketplace.services.payments.reconciliation import (
    ReconciliationEngine,
    ReconciliationResult,
)
from marketplace.services.payments.router import (
    InvalidPaymentMethodError,
    PaymentInstruction,
    PaymentRouter,
)

logger = get_logger(__name__)

__all__ = [
    "InvalidPaymentMethodError",
    "NotOwnerError",
    "OrderService",
    "OrderServiceError",
    "OrderValidationError",
    "PlacedOrder",
]

SHIPPING_FIELDS = ("full_name", "address", "city", "phone")

INITIAL_PAYMENT_STATUS_TEXT = {
    PaymentCategory.CASH_ON_DELIVERY: "Pay on delivery",
    PaymentCategory.MANUAL_TRANSFER: "Awaiting payment confirmation",
    PaymentCategory.GATEWAY: "Awaiting payment",
}


class OrderServiceError(Exception):
    """Base exception for order service errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderValidationError(OrderServiceError):
    """Raised when order input is malformed."""

    pass


class NotOwnerError(OrderServiceError):
    """Raised when a user acts on an order they have no rights over."""

    pass


@dataclass
class PlacedOrder:
    """An order together with what the buyer must do next to pay."""

    order: Order
    instruction: PaymentInstruction


class OrderService:
    """
    Order service orchestrating business logic and integrations.

    Attributes:
        repository: Order repository for data access
        catalog: Catalog snapshot reader used at intake
        ledger: Stock ledger used for cash-on-delivery intake
        router: Payment router
        engine: Reconciliation engine for every later transition
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        gateway: Optional[PaynowGateway] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher
        self.repository = OrderRepository(session)
        self.catalog = CatalogReader(session)
        self.ledger = StockLedger(session)
        self.router = PaymentRouter(self.settings)
        self.engine = ReconciliationEngine(
            session,
            settings=self.settings,
            gateway=gateway,
            dispatcher=dispatcher,
            repository=self.repository,
            state_machine=OrderStateMachine(session, self.repository, self.ledger),
            router=self.router,
        )

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def create_order(
        self,
        buyer: User,
        shipping: dict[str, Any],
        cart_items: Iterable[dict[str, Any]],
        payment_method: Union[str, PaymentMethod],
    ) -> PlacedOrder:
        """
        Turn a cart into a durable order.

        Prices come from the catalog; any price on a cart line is ignored.
        Cash-on-delivery orders take their stock in the same transaction that
        writes the order, so they either exist as CONFIRMED with stock held or
        do not exist at all.

        Args:
            buyer: User placing the order
            shipping: full_name, address, city and phone
            cart_items: Lines with ``product_id`` and ``quantity``
            payment_method: Chosen method, by value or enum

        Returns:
            The committed order and its payment instruction

        Raises:
            InvalidPaymentMethodError: If the method is unknown or not offered
            OrderValidationError: If the cart or shipping details are malformed
            ProductNotFoundError: If any product id is unknown
            InsufficientStockError: If any product lacks the requested units
            OrderCreationError: If the rows cannot be written
        """
        method = self.router.parse_method(payment_method)
        lines = self._validate_cart(cart_items)
        shipping = self._validate_shipping(shipping)

        logger.info(
            "Creating order",
            buyer_id=str(buyer.id),
            payment_method=method.value,
            line_count=len(lines),
        )

        products = await self.catalog.require_products([pid for pid, _ in lines])

        for product_id, quantity in merge_lines(lines):
            product = products[product_id]
            if quantity > product.quantity:
                logger.info(
                    "Order rejected, insufficient stock",
                    product_id=str(product_id),
                    requested=quantity,
                    available=product.quantity,
                )
                raise InsufficientStockError(
                    product_id, quantity, product.quantity, product_name=product.name
                )

        items = []
        for product_id, quantity in lines:
            product = products[product_id]
            items.append(
                {
                    "product_id": product.id,
                    "seller_id": product.seller_id,
                    "name": product.name,
                    "price": product.price,
                    "quantity": quantity,
                    "image": product.image,
                }
            )
        total_price = sum(
            (Decimal(item["price"]) * item["quantity"] for item in items), Decimal("0.00")
        )

        decision = self.router.route(method)
        order_number = order_number_for(utcnow(), uuid.uuid4().hex[:6])

        try:
            order = await self.repository.create_order_with_items(
                buyer_id=buyer.id,
                order_number=order_number,
                status=decision.initial_status,
                payment_method=method,
                total_price=total_price,
                shipping=shipping,
                items=items,
                payment_reference=(
                    order_number if method.category == PaymentCategory.GATEWAY else None
                ),
                payment_status_text=INITIAL_PAYMENT_STATUS_TEXT[method.category],
            )
            if decision.decrement_now:
                await self.ledger.reserve_many(lines)
            await self.session.commit()
        except OrderCreationError:
            raise
        except BaseException:
            await self.session.rollback()
            raise

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order_number,
            status=order.status.value,
            total_price=str(total_price),
        )

        redirect_url = None
        if method.category == PaymentCategory.GATEWAY:
            redirect_url = await self.engine.initiate_gateway_payment(order, buyer.email)

        instruction = self.router.instructions(
            method, order.order_number, order.total_price, redirect_url
        )
        await self._notify_order_placed(order, buyer, instruction)
        return PlacedOrder(order=order, instruction=instruction)

    def _validate_cart(self, cart_items: Iterable[dict[str, Any]]) -> list[tuple[uuid.UUID, int]]:
        lines: list[tuple[uuid.UUID, int]] = []
        for index, line in enumerate(cart_items):
            try:
                product_id = uuid.UUID(str(line["product_id"]))
                quantity = int(line["quantity"])
            except (KeyError, TypeError, ValueError) as e:
                raise OrderValidationError(
                    "Each cart line needs a product_id and an integer quantity",
                    line=index,
                ) from e
            if quantity <= 0:
                raise OrderValidationError(
                    "Quantity must be positive",
                    line=index,
                    product_id=str(product_id),
                    quantity=quantity,
                )
            lines.append((product_id, quantity))

        if not lines:
            raise OrderValidationError("Cart is empty")
        return lines

    def _validate_shipping(self, shipping: dict[str, Any]) -> dict[str, str]:
        cleaned = {field: str(shipping.get(field) or "").strip() for field in SHIPPING_FIELDS}
        missing = [field for field, value in cleaned.items() if not value]
        if missing:
            raise OrderValidationError("Missing shipping details", missing=missing)
        return cleaned

    async def _notify_order_placed(
        self, order: Order, buyer: User, instruction: PaymentInstruction
    ) -> None:
        if self.dispatcher is None:
            return
        try:
            result = await self.session.execute(
                select(User).where(User.id.in_(order.seller_ids))
            )
            sellers = [Recipient.from_user(seller) for seller in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(
                "Could not load sellers for notification",
                order_id=str(order.id),
                error=str(e),
            )
            sellers = []

        self.dispatcher.dispatch_order_placed(
            OrderNotice.from_order(order),
            Recipient.from_user(buyer),
            sellers,
            instruction.message,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: uuid.UUID, actor: User) -> Order:
        """
        Raises:
            OrderNotFoundError: If the order does not exist
            NotOwnerError: If the actor is neither the buyer nor an admin
        """
        order = await self.repository.get_order_or_raise(order_id)
        if order.buyer_id != actor.id and not actor.is_admin:
            raise NotOwnerError(
                "Not authorized to view this order",
                order_id=str(order_id),
                user_id=str(actor.id),
            )
        return order

    async def list_my_orders(self, actor: User) -> list[Order]:
        return await self.repository.list_buyer_orders(actor.id)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def _load_as_owner(self, order_id: uuid.UUID, actor: User) -> Order:
        order = await self.repository.get_order_or_raise(order_id)
        if order.buyer_id != actor.id:
            logger.info(
                "Owner check failed",
                order_id=str(order_id),
                user_id=str(actor.id),
            )
            raise NotOwnerError(
                "Only the buyer who placed this order can do that",
                order_id=str(order_id),
                user_id=str(actor.id),
            )
        return order

    async def _load_as_seller_or_admin(self, order_id: uuid.UUID, actor: User) -> Order:
        order = await self.repository.get_order_or_raise(order_id)
        if actor.is_admin:
            return order
        if actor.is_seller and await self.repository.seller_owns_item(
            order_id, actor.id
        ):
            return order
        logger.info(
            "Seller check failed",
            order_id=str(order_id),
            user_id=str(actor.id),
            role=actor.role.value,
        )
        raise NotOwnerError(
            "Only a seller with items in this order or an admin can do that",
            order_id=str(order_id),
            user_id=str(actor.id),
        )

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    async def update_status(
        self,
        order_id: uuid.UUID,
        actor: User,
        status: Union[str, OrderStatus],
        tracking_number: Optional[str] = None,
    ) -> Order:
        """
        Seller/admin status update.

        Raises:
            OrderValidationError: If the status is unknown
            NotOwnerError: If the actor may not update this order
            InvalidTransitionError: If the edge is not allowed
        """
        try:
            target = status if isinstance(status, OrderStatus) else OrderStatus.from_string(status)
        except ValueError as e:
            raise OrderValidationError(f"Unknown order status: {status}", status=str(status)) from e

        order = await self._load_as_seller_or_admin(order_id, actor)
        return await self.engine.update_status(
            order, target, changed_by=actor.id, tracking_number=tracking_number
        )

    async def verify_payment(self, order_id: uuid.UUID, actor: User) -> ReconciliationResult:
        order = await self._load_as_seller_or_admin(order_id, actor)
        return await self.engine.verify_payment(order, changed_by=actor.id)

    async def confirm_payment(self, order_id: uuid.UUID, actor: User) -> ReconciliationResult:
        order = await self._load_as_seller_or_admin(order_id, actor)
        label = "Admin" if actor.is_admin else "Seller"
        return await self.engine.confirm_payment(order, actor.id, confirmed_by_label=label)

    async def cancel_order(
        self, order_id: uuid.UUID, actor: User, reason: Optional[str] = None
    ) -> Order:
        order = await self._load_as_owner(order_id, actor)
        return await self.engine.cancel(order, changed_by=actor.id, reason=reason)

    async def switch_payment_method(
        self,
        order_id: uuid.UUID,
        actor: User,
        payment_method: Union[str, PaymentMethod],
    ) -> PlacedOrder:
        """
        Re-route an unpaid order to another payment method.

        Raises:
            InvalidPaymentMethodError: If the method is unknown or not offered
            NotOwnerError: If the actor is not the buyer
            InvalidTransitionError: If payment already landed
            InsufficientStockError: If switching to cash on delivery and
                stock ran out
        """
        method = self.router.parse_method(payment_method)
        order = await self._load_as_owner(order_id, actor)
        previous = order.payment_method

        order = await self.engine.switch_payment_method(order, method, changed_by=actor.id)

        redirect_url = None
        if method != previous and method.category == PaymentCategory.GATEWAY:
            redirect_url = await self.engine.initiate_gateway_payment(order, actor.email)
        elif method.category == PaymentCategory.GATEWAY:
            redirect_url = order.payment_redirect_url

        instruction = self.router.instructions(
            method, order.order_number, order.total_price, redirect_url
        )
        return PlacedOrder(order=order, instruction=instruction)

    async def refund_order(
        self,
        order_id: uuid.UUID,
        actor: User,
        reason: str,
        amount: Optional[Decimal] = None,
    ) -> Order:
        """
        Raises:
            NotOwnerError: If the actor is not an admin
            RefundError: If the order is not refundable
        """
        if not actor.is_admin:
            raise NotOwnerError(
                "Only administrators can refund orders",
                order_id=str(order_id),
                user_id=str(actor.id),
            )
        order = await self.repository.get_order_or_raise(order_id)
        return await self.engine.refund(order, actor.id, reason=reason, amount=amount)
