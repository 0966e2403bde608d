"""Order state machine with conditional, stock-aware transitions.

Every status change in the service goes through ``OrderStateMachine``. A
transition is validated against a transition table, written with a
conditional UPDATE that only succeeds if the order is still in the status
the caller observed, and applies the stock effect implied by the status
change (``holds_stock(new) - holds_stock(old)``) in the same transaction.
Callers own the commit.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.logging import get_logger
from marketplace.database.base import utcnow
from marketplace.database.models.order import Order
from marketplace.services.inventory.ledger import StockLedger
from marketplace.services.orders.enums import (
    ORDER_STATUS_TRANSITIONS,
    OrderStatus,
    TransitionSource,
    get_allowed_order_transitions,
    stock_delta,
)
from marketplace.services.orders.repository import OrderRepository

logger = get_logger(__name__)


class StateTransitionError(Exception):
    """Base exception for rejected or lost transitions."""

    def __init__(
        self,
        message: str,
        current_state: OrderStatus,
        target_state: OrderStatus,
        **context: Any,
    ):
        super().__init__(message)
        self.current_state = current_state
        self.target_state = target_state
        self.context = context


class InvalidTransitionError(StateTransitionError):
    """Raised when a requested transition is not in the transition table."""

    def __init__(
        self,
        current_state: OrderStatus,
        target_state: OrderStatus,
        allowed: Optional[Set[OrderStatus]] = None,
        **context: Any,
    ):
        allowed_values = sorted(s.value for s in (allowed or set()))
        super().__init__(
            f"Cannot change order status from {current_state.value} to "
            f"{target_state.value}",
            current_state=current_state,
            target_state=target_state,
            allowed_transitions=allowed_values,
            **context,
        )
        self.allowed_transitions = allowed_values


class ConcurrentTransitionError(StateTransitionError):
    """Raised when another writer changed the order's status first."""

    def __init__(self, order_id: uuid.UUID, expected: OrderStatus, target: OrderStatus):
        super().__init__(
            f"Order {order_id} is no longer {expected.value}",
            current_state=expected,
            target_state=target,
            order_id=str(order_id),
        )
        self.order_id = order_id


TransitionTable = Dict[OrderStatus, Set[OrderStatus]]


def lifecycle_timestamps(
    order: Order, target: OrderStatus, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Timestamp columns set when an order enters ``target``.

    ``shipped_at`` and ``paid_at`` keep their first value.
    """
    now = now or utcnow()
    values: Dict[str, Any] = {}
    if target == OrderStatus.PAID and order.paid_at is None:
        values["paid_at"] = now
    elif target == OrderStatus.SHIPPED and order.shipped_at is None:
        values["shipped_at"] = now
    elif target == OrderStatus.DELIVERED:
        values["delivered_at"] = now
    elif target == OrderStatus.CANCELLED:
        values["cancelled_at"] = now
    return values


class OrderStateMachine:
    """Applies validated, conditional status transitions to orders."""

    def __init__(
        self,
        session: AsyncSession,
        repository: Optional[OrderRepository] = None,
        ledger: Optional[StockLedger] = None,
    ):
        self.session = session
        self.repository = repository or OrderRepository(session)
        self.ledger = ledger or StockLedger(session)

    def validate_transition(
        self,
        order: Order,
        target_status: OrderStatus,
        table: TransitionTable = ORDER_STATUS_TRANSITIONS,
    ) -> None:
        """
        Check a transition against ``table``.

        Raises:
            InvalidTransitionError: If the edge is not in the table
        """
        current_status = order.status
        allowed = table.get(current_status, set())
        if target_status not in allowed:
            logger.info(
                "Transition rejected",
                order_id=str(order.id),
                current_status=current_status.value,
                target_status=target_status.value,
            )
            raise InvalidTransitionError(
                current_status,
                target_status,
                allowed=allowed,
                order_id=str(order.id),
            )

    def get_allowed_transitions(self, order: Order) -> Set[OrderStatus]:
        return get_allowed_order_transitions(order.status)

    async def apply_transition(
        self,
        order: Order,
        target_status: OrderStatus,
        *,
        source: TransitionSource,
        changed_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        table: TransitionTable = ORDER_STATUS_TRANSITIONS,
    ) -> Order:
        """
        Move ``order`` to ``target_status`` inside the current transaction.

        Args:
            order: Order as last read by the caller
            target_status: Status to move to
            source: What caused the change, recorded in history
            changed_by: Acting user, if any
            reason: Free-text reason recorded in history
            values: Extra order columns written with the status
            metadata: Extra context recorded in history
            table: Transition table to validate against

        Returns:
            The same order, refreshed from the database

        Raises:
            InvalidTransitionError: If the edge is not allowed
            ConcurrentTransitionError: If the order left its observed status
                before the write
            InsufficientStockError: If entering a stock-holding status and
                stock ran out; the caller must roll back
        """
        self.validate_transition(order, target_status, table)

        current_status = order.status
        row_values = lifecycle_timestamps(order, target_status)
        row_values.update(values or {})

        claimed = await self.repository.conditional_status_update(
            order.id, current_status, target_status, row_values
        )
        if not claimed:
            logger.info(
                "Transition lost to concurrent writer",
                order_id=str(order.id),
                expected_status=current_status.value,
                target_status=target_status.value,
            )
            raise ConcurrentTransitionError(order.id, current_status, target_status)

        lines = [(item.product_id, item.quantity) for item in order.items]
        delta = stock_delta(current_status, target_status)
        if delta > 0:
            await self.ledger.reserve_many(lines)
        elif delta < 0:
            await self.ledger.restock_many(lines)

        await self.repository.add_status_history(
            order.id,
            current_status,
            target_status,
            source=source,
            changed_by=changed_by,
            reason=reason,
            details=metadata,
        )
        await self.session.refresh(order)

        logger.info(
            "Order status changed",
            order_id=str(order.id),
            transition=f"{current_status.value}->{target_status.value}",
            source=source.value,
            stock_effect=delta,
            changed_by=str(changed_by) if changed_by else None,
        )
        return order
