"""
Order data access repository.

Persists orders with their items and initial history row as one unit, runs
the conditional status updates every transition depends on, and serves the
buyer, seller and reference lookups. The repository never commits; the
calling service owns the transaction boundary.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.logging import get_logger
from marketplace.database.models.order import Order, OrderItem, OrderStatusHistory
from marketplace.services.orders.enums import (
    OrderStatus,
    PaymentMethod,
    TransitionSource,
)

logger = get_logger(__name__)


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderNotFoundError(OrderRepositoryError):
    """Raised when an order is not found."""

    def __init__(self, order_id: Any):
        super().__init__(f"Order {order_id} not found", order_id=str(order_id))
        self.order_id = order_id


class OrderCreationError(OrderRepositoryError):
    """Raised when persisting a new order fails."""

    pass


class OrderRepository:
    """
    Repository for order data access operations.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_order_with_items(
        self,
        *,
        buyer_id: uuid.UUID,
        order_number: str,
        status: OrderStatus,
        payment_method: PaymentMethod,
        total_price: Decimal,
        shipping: dict[str, str],
        items: Sequence[dict[str, Any]],
        payment_reference: Optional[str] = None,
        payment_status_text: Optional[str] = None,
    ) -> Order:
        """
        Add an order, its items and its first history row to the session.

        Args:
            buyer_id: Buyer placing the order
            order_number: Human-readable order number
            status: Initial status decided by the payment router
            payment_method: Method chosen by the buyer
            total_price: Server-computed total
            shipping: full_name, address, city and phone
            items: Line snapshots with product_id, seller_id, name, price,
                quantity and image
            payment_reference: Reference the gateway will report back
            payment_status_text: Initial human-readable payment status

        Returns:
            Flushed order with its items loaded

        Raises:
            OrderCreationError: If the rows cannot be written; the session
                has been rolled back
        """
        try:
            order = Order(
                buyer_id=buyer_id,
                order_number=order_number,
                status=status,
                payment_method=payment_method,
                total_price=total_price,
                shipping_full_name=shipping["full_name"],
                shipping_address=shipping["address"],
                shipping_city=shipping["city"],
                shipping_phone=shipping["phone"],
                payment_reference=payment_reference,
                payment_status_text=payment_status_text,
                items=[
                    OrderItem(
                        position=position,
                        product_id=item["product_id"],
                        seller_id=item["seller_id"],
                        name=item["name"],
                        price=item["price"],
                        quantity=item["quantity"],
                        image=item.get("image"),
                    )
                    for position, item in enumerate(items)
                ],
            )
            self.session.add(order)
            await self.session.flush()

            self.session.add(
                OrderStatusHistory(
                    order_id=order.id,
                    from_status=None,
                    to_status=status,
                    changed_by=buyer_id,
                    source=TransitionSource.INTAKE,
                    reason="Order created",
                    details={"payment_method": payment_method.value},
                )
            )
            await self.session.flush()

            logger.info(
                "Order rows written",
                order_id=str(order.id),
                order_number=order_number,
                item_count=len(order.items),
            )
            return order

        except IntegrityError as e:
            await self.session.rollback()
            logger.error(
                "Order creation failed - integrity error",
                order_number=order_number,
                error=str(e),
            )
            raise OrderCreationError(
                "Order creation failed due to data integrity violation",
                order_number=order_number,
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Order creation failed - database error",
                order_number=order_number,
                error=str(e),
            )
            raise OrderCreationError(
                "Order creation failed due to database error",
                order_number=order_number,
            ) from e

    async def get_order_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Load an order with its items, bypassing any stale copy in the session.

        Raises:
            OrderRepositoryError: If the query fails
        """
        try:
            stmt = (
                select(Order)
                .where(Order.id == order_id)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", order_id=str(order_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch order", order_id=str(order_id)
            ) from e

    async def get_order_or_raise(self, order_id: uuid.UUID) -> Order:
        order = await self.get_order_by_id(order_id)
        if order is None:
            logger.info("Order not found", order_id=str(order_id))
            raise OrderNotFoundError(order_id)
        return order

    async def get_order_by_reference(self, reference: str) -> Optional[Order]:
        """Find an order by the reference it was given at payment initiation."""
        try:
            stmt = (
                select(Order)
                .where(Order.payment_reference == reference)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order by reference", reference=reference, error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch order by reference", reference=reference
            ) from e

    async def list_buyer_orders(self, buyer_id: uuid.UUID) -> list[Order]:
        """Buyer's orders, newest first."""
        stmt = (
            select(Order)
            .where(Order.buyer_id == buyer_id)
            .order_by(Order.created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_seller_orders(
        self,
        seller_id: uuid.UUID,
        statuses: Optional[Sequence[OrderStatus]] = None,
    ) -> list[Order]:
        """
        Orders containing at least one item owned by the seller, newest first.

        Items are returned in full; callers slice them per seller.
        """
        has_seller_item = exists().where(
            OrderItem.order_id == Order.id,
            OrderItem.seller_id == seller_id,
        )
        stmt = (
            select(Order)
            .where(has_seller_item)
            .order_by(Order.created_at.desc())
            .execution_options(populate_existing=True)
        )
        if statuses:
            stmt = stmt.where(Order.status.in_(list(statuses)))

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def seller_owns_item(self, order_id: uuid.UUID, seller_id: uuid.UUID) -> bool:
        stmt = select(
            exists().where(
                OrderItem.order_id == order_id,
                OrderItem.seller_id == seller_id,
            )
        )
        result = await self.session.execute(stmt)
        return bool(result.scalar())

    async def conditional_status_update(
        self,
        order_id: uuid.UUID,
        expected: OrderStatus,
        target: OrderStatus,
        values: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Move an order to ``target`` only if it is still in ``expected``.

        Args:
            order_id: Order to update
            expected: Status the caller observed
            target: New status
            values: Extra columns to write in the same statement

        Returns:
            False if another writer changed the status first
        """
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=target, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def update_fields(self, order: Order, **values: Any) -> None:
        """Write non-status columns and refresh the in-memory order."""
        stmt = (
            update(Order)
            .where(Order.id == order.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
        await self.session.refresh(order)

    async def add_status_history(
        self,
        order_id: uuid.UUID,
        from_status: Optional[OrderStatus],
        to_status: OrderStatus,
        source: TransitionSource,
        changed_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order_id,
            from_status=from_status,
            to_status=to_status,
            source=source,
            changed_by=changed_by,
            reason=reason,
            details=details or {},
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_status_history(self, order_id: uuid.UUID) -> list[OrderStatusHistory]:
        """History rows for an order, oldest first."""
        stmt = (
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


def order_number_for(moment: datetime, suffix: str) -> str:
    """Human-readable order number: ``ORD-YYYYMMDDHHMMSS-XXXXXX``."""
    return f"ORD-{moment.strftime('%Y%m%d%H%M%S')}-{suffix.upper()}"
