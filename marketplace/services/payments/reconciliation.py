"""
Reconciliation engine.

Applies every signal that can move an order after it was placed: gateway
callbacks, gateway polls, manual payment confirmation, buyer cancellation,
payment method switches, administrator refunds and seller/admin status
updates. Each signal is a guard clause over the order's persisted status
followed by one conditional transition through ``OrderStateMachine``, so a
duplicate or racing signal observes the already-advanced status and becomes
a no-op instead of a second effect.

All paths to PAID share ``mark_paid``, tagged with a ``PaymentSource``.

Each public method is one unit of work: it commits on success, rolls back
on failure, and only then schedules notifications.
"""

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import Settings, get_settings
from marketplace.core.logging import get_logger
from marketplace.database.base import utcnow
from marketplace.database.models.order import Order
from marketplace.database.models.user import User
from marketplace.services.inventory.ledger import InsufficientStockError, StockLedger
from marketplace.services.notifications.dispatcher import (
    NotificationDispatcher,
    OrderNotice,
    Recipient,
)
from marketplace.services.orders.enums import (
    PAYMENT_METHOD_SWITCH_TRANSITIONS,
    OrderStatus,
    PaymentCategory,
    PaymentMethod,
    PaymentSource,
    TransitionSource,
    get_allowed_order_transitions,
)
from marketplace.services.orders.repository import OrderRepository
from marketplace.services.orders.state_machine import (
    ConcurrentTransitionError,
    InvalidTransitionError,
    OrderStateMachine,
)
from marketplace.services.payments.gateway import (
    GatewayError,
    GatewayStatus,
    PaynowGateway,
)
from marketplace.services.payments.router import PaymentRouter

logger = get_logger(__name__)

STOCK_UNAVAILABLE_TEXT = "Paid, stock unavailable - refund required"


class ReconciliationOutcome(str, Enum):
    """Result of applying a payment signal."""

    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    NOT_FOUND = "not_found"
    ACKNOWLEDGED = "acknowledged"
    PAYMENT_FAILED = "payment_failed"
    NOT_CONFIRMED = "not_confirmed"
    UNVERIFIABLE = "unverifiable"
    STOCK_UNAVAILABLE = "stock_unavailable"


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    message: str
    order: Optional[Order] = None
    allow_manual_confirmation: bool = False
    gateway_status: Optional[str] = None
    stock_error: Optional[InsufficientStockError] = None

    @property
    def success(self) -> bool:
        return self.outcome in (
            ReconciliationOutcome.APPLIED,
            ReconciliationOutcome.ALREADY_PROCESSED,
        )


class RefundError(Exception):
    """Raised when a refund is not allowed for an order."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class ReconciliationEngine:
    """Applies payment and lifecycle signals to orders."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        gateway: Optional[PaynowGateway] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        repository: Optional[OrderRepository] = None,
        state_machine: Optional[OrderStateMachine] = None,
        router: Optional[PaymentRouter] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.repository = repository or OrderRepository(session)
        self.state_machine = state_machine or OrderStateMachine(
            session, self.repository, StockLedger(session)
        )
        self.router = router or PaymentRouter(self.settings)

    # ------------------------------------------------------------------
    # Unified payment confirmation
    # ------------------------------------------------------------------

    async def mark_paid(
        self,
        order: Order,
        source: PaymentSource,
        *,
        changed_by: Optional[uuid.UUID] = None,
        external_reference: Optional[str] = None,
        payment_status_text: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Move an order to PAID and take its stock if it does not hold any yet.

        The write is conditional on the status the order was read in. If
        another signal got there first the result is ALREADY_PROCESSED when
        the order is paid, otherwise the transition is rejected. If stock ran
        out while the order was pending, nothing changes except the payment
        metadata and the result is STOCK_UNAVAILABLE.

        Raises:
            InvalidTransitionError: If PAID is not reachable from the
                order's current status
        """
        order_id = order.id
        now = utcnow()
        values: dict[str, Any] = {
            "paid_source": source,
            "payment_updated_at": now,
        }
        if external_reference is not None:
            values["payment_result_id"] = external_reference
        if payment_status_text is not None:
            values["payment_status_text"] = payment_status_text

        try:
            await self.state_machine.apply_transition(
                order,
                OrderStatus.PAID,
                source=TransitionSource(source.value),
                changed_by=changed_by,
                reason=payment_status_text,
                values=values,
                metadata={"external_reference": external_reference} if external_reference else None,
            )
        except ConcurrentTransitionError:
            await self.session.rollback()
            fresh = await self.repository.get_order_or_raise(order_id)
            return self._already_paid_or_reject(fresh)
        except InsufficientStockError as e:
            await self.session.rollback()
            fresh = await self.repository.get_order_or_raise(order_id)
            await self.repository.update_fields(
                fresh,
                payment_result_id=external_reference or fresh.payment_result_id,
                payment_status_text=STOCK_UNAVAILABLE_TEXT,
                payment_updated_at=now,
            )
            await self.session.commit()
            logger.error(
                "Payment received but stock unavailable",
                order_id=str(order_id),
                source=source.value,
                product_id=e.context.get("product_id"),
                requested=e.requested,
                available=e.available,
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.STOCK_UNAVAILABLE,
                message=(
                    "Payment recorded but stock is no longer available; "
                    "the order needs a refund or restock."
                ),
                order=fresh,
                stock_error=e,
            )
        except BaseException:
            await self.session.rollback()
            raise

        await self.session.commit()
        logger.info("Order marked paid", order_id=str(order_id), source=source.value)
        await self._notify_status_changed(order, OrderStatus.PAID)

        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            message="Payment confirmed. Order marked as paid.",
            order=order,
        )

    def _already_paid_or_reject(self, order: Order) -> ReconciliationResult:
        if order.is_paid:
            logger.info(
                "Payment signal already applied",
                order_id=str(order.id),
                status=order.status.value,
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ALREADY_PROCESSED,
                message=f"Order is already {order.status.value}.",
                order=order,
            )
        raise InvalidTransitionError(
            order.status,
            OrderStatus.PAID,
            allowed=get_allowed_order_transitions(order.status),
            order_id=str(order.id),
        )

    # ------------------------------------------------------------------
    # Gateway signals
    # ------------------------------------------------------------------

    def _get_gateway(self) -> PaynowGateway:
        if self.gateway is None:
            self.gateway = PaynowGateway(self.settings)
        return self.gateway

    async def handle_callback(self, fields: Mapping[str, str]) -> ReconciliationResult:
        """
        Apply a status update posted by the payment gateway.

        Only a known failure status cancels the order, and only while the
        order is still on the gateway method. Anything unrecognised is
        acknowledged without a state change.

        Raises:
            GatewayNotConfiguredError: If the gateway has no credentials
            GatewaySignatureError: If the callback fails hash verification;
                no state is touched
        """
        status = self._get_gateway().parse_callback(fields)
        logger.info(
            "Gateway callback received",
            reference=status.reference,
            gateway_status=status.status,
        )

        order = await self.repository.get_order_by_reference(status.reference)
        if order is None:
            logger.warning("Gateway callback for unknown order", reference=status.reference)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.NOT_FOUND,
                message="Order not found",
                gateway_status=status.status,
            )

        if status.is_intermediate:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ACKNOWLEDGED,
                message="Callback received",
                order=order,
                gateway_status=status.status,
            )

        if order.status != OrderStatus.PENDING:
            logger.info(
                "Gateway callback for already processed order",
                order_id=str(order.id),
                status=order.status.value,
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ALREADY_PROCESSED,
                message="Order already processed",
                order=order,
                gateway_status=status.status,
            )

        if status.paid:
            result = await self._mark_paid_from_callback(order, status)
        elif status.failed and order.payment_method.category == PaymentCategory.GATEWAY:
            result = await self._cancel_for_failed_payment(order, status)
        else:
            logger.warning(
                "Gateway callback acknowledged without state change",
                order_id=str(order.id),
                payment_method=order.payment_method.value,
                gateway_status=status.status,
            )
            result = ReconciliationResult(
                outcome=ReconciliationOutcome.ACKNOWLEDGED,
                message="Callback received",
                order=order,
            )

        result.gateway_status = status.status
        return result

    async def _mark_paid_from_callback(
        self, order: Order, status: GatewayStatus
    ) -> ReconciliationResult:
        order_id = order.id
        try:
            return await self.mark_paid(
                order,
                PaymentSource.GATEWAY_CALLBACK,
                external_reference=status.external_reference,
                payment_status_text=status.status,
            )
        except InvalidTransitionError as e:
            # Lost the race to a cancel; the gateway still gets its ack.
            logger.error(
                "Paid callback landed on an order that left PENDING",
                order_id=str(order_id),
                status=e.current_state.value,
                external_reference=status.external_reference,
            )
            fresh = await self.repository.get_order_or_raise(order_id)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ALREADY_PROCESSED,
                message=f"Order is already {fresh.status.value}.",
                order=fresh,
            )

    async def _cancel_for_failed_payment(
        self, order: Order, status: GatewayStatus
    ) -> ReconciliationResult:
        order_id = order.id
        try:
            await self.state_machine.apply_transition(
                order,
                OrderStatus.CANCELLED,
                source=TransitionSource.GATEWAY_CALLBACK,
                reason=f"Gateway reported {status.status}",
                values={
                    "payment_status_text": status.status,
                    "payment_result_id": status.external_reference,
                    "payment_updated_at": utcnow(),
                },
            )
        except ConcurrentTransitionError:
            await self.session.rollback()
            fresh = await self.repository.get_order_or_raise(order_id)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ALREADY_PROCESSED,
                message="Order already processed",
                order=fresh,
            )
        except BaseException:
            await self.session.rollback()
            raise

        await self.session.commit()
        logger.info(
            "Order cancelled after failed payment",
            order_id=str(order_id),
            gateway_status=status.status,
        )
        await self._notify_status_changed(order, OrderStatus.CANCELLED)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.PAYMENT_FAILED,
            message=f"Payment {status.status.lower()}; order cancelled.",
            order=order,
        )

    async def verify_payment(
        self, order: Order, changed_by: Optional[uuid.UUID] = None
    ) -> ReconciliationResult:
        """
        Poll the gateway for a pending order's payment status.

        Gateway failures and timeouts never surface as errors: the result is
        UNVERIFIABLE with the manual confirmation path offered instead.

        Raises:
            InvalidTransitionError: If the order is not pending and not paid
        """
        if order.status != OrderStatus.PENDING:
            return self._already_paid_or_reject(order)

        unverifiable = ReconciliationResult(
            outcome=ReconciliationOutcome.UNVERIFIABLE,
            message=(
                "Unable to verify payment automatically. Use Confirm Payment to "
                "mark the order as paid once you have confirmed the money was received."
            ),
            order=order,
            allow_manual_confirmation=True,
        )

        gateway = self._get_gateway()
        if not gateway.enabled or not order.payment_poll_url:
            logger.info(
                "Payment cannot be polled",
                order_id=str(order.id),
                gateway_enabled=gateway.enabled,
                has_poll_url=bool(order.payment_poll_url),
            )
            return unverifiable

        deadline = self.settings.gateway_timeout_seconds * (self.settings.gateway_max_retries + 1)
        try:
            status = await asyncio.wait_for(gateway.poll(order.payment_poll_url), timeout=deadline)
        except (GatewayError, asyncio.TimeoutError) as e:
            logger.warning(
                "Payment poll failed, offering manual confirmation",
                order_id=str(order.id),
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )
            return unverifiable

        if not status.paid:
            logger.info(
                "Payment not yet completed",
                order_id=str(order.id),
                gateway_status=status.status,
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.NOT_CONFIRMED,
                message="Payment not yet completed on Paynow.",
                order=order,
                gateway_status=status.status,
            )

        result = await self.mark_paid(
            order,
            PaymentSource.GATEWAY_POLL,
            changed_by=changed_by,
            external_reference=status.external_reference,
            payment_status_text="Paid (Verified)",
        )
        result.gateway_status = status.status
        return result

    async def confirm_payment(
        self,
        order: Order,
        changed_by: uuid.UUID,
        confirmed_by_label: str = "Seller",
    ) -> ReconciliationResult:
        """
        Record a human confirmation that the buyer's money arrived.

        Raises:
            InvalidTransitionError: If the order is not pending and not paid
        """
        if order.status != OrderStatus.PENDING:
            return self._already_paid_or_reject(order)

        return await self.mark_paid(
            order,
            PaymentSource.MANUAL,
            changed_by=changed_by,
            external_reference=f"MANUAL_{int(utcnow().timestamp() * 1000)}",
            payment_status_text=f"Manually Confirmed by {confirmed_by_label}",
        )

    async def initiate_gateway_payment(self, order: Order, payer_email: str) -> Optional[str]:
        """
        Start a hosted-page payment for a committed, pending order.

        Returns:
            The redirect URL, or None if the gateway could not be reached;
            the order is left pending either way
        """
        gateway = self._get_gateway()
        reference = order.payment_reference or order.order_number
        try:
            initiation = await gateway.initiate(
                reference=reference,
                payer_email=payer_email,
                amount=Decimal(order.total_price),
                description=f"Order {order.order_number}",
            )
        except GatewayError as e:
            logger.warning(
                "Gateway initiation failed",
                order_id=str(order.id),
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        try:
            await self.repository.update_fields(
                order,
                payment_reference=reference,
                payment_poll_url=initiation.poll_url,
                payment_redirect_url=initiation.redirect_url,
                payment_status_text="Awaiting payment",
                payment_updated_at=utcnow(),
            )
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise

        logger.info("Gateway payment initiated", order_id=str(order.id))
        return initiation.redirect_url

    # ------------------------------------------------------------------
    # Lifecycle signals
    # ------------------------------------------------------------------

    async def cancel(
        self,
        order: Order,
        changed_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Buyer cancellation from PENDING or CONFIRMED.

        Stock held by a cash-on-delivery order is returned by the transition.

        Raises:
            InvalidTransitionError: From any other status, or if the status
                changed concurrently
        """
        if not order.status.can_cancel():
            raise InvalidTransitionError(
                order.status,
                OrderStatus.CANCELLED,
                allowed={s for s in get_allowed_order_transitions(order.status) if s.can_cancel()},
                order_id=str(order.id),
            )
        return await self._transition(
            order,
            OrderStatus.CANCELLED,
            source=TransitionSource.BUYER_CANCEL,
            changed_by=changed_by,
            reason=reason or "Cancelled by buyer",
        )

    async def update_status(
        self,
        order: Order,
        target: OrderStatus,
        changed_by: uuid.UUID,
        tracking_number: Optional[str] = None,
    ) -> Order:
        """
        Seller/admin status update through the lifecycle table.

        PAID goes through ``mark_paid`` like every other payment signal.

        Raises:
            InvalidTransitionError: If the edge is not allowed
            InsufficientStockError: If PAID requires stock that is gone
        """
        if target == OrderStatus.PAID:
            self.state_machine.validate_transition(order, target)
            result = await self.mark_paid(
                order,
                PaymentSource.STATUS_UPDATE,
                changed_by=changed_by,
                external_reference=(
                    f"COD_{int(utcnow().timestamp() * 1000)}"
                    if order.payment_method.category == PaymentCategory.CASH_ON_DELIVERY
                    else None
                ),
                payment_status_text="Marked paid by seller",
            )
            if result.stock_error is not None:
                raise result.stock_error
            return result.order or order

        values: dict[str, Any] = {}
        if target == OrderStatus.SHIPPED and tracking_number:
            values["tracking_number"] = tracking_number

        return await self._transition(
            order,
            target,
            source=TransitionSource.STATUS_UPDATE,
            changed_by=changed_by,
            values=values,
        )

    async def refund(
        self,
        order: Order,
        processed_by: uuid.UUID,
        reason: str,
        amount: Optional[Decimal] = None,
    ) -> Order:
        """
        Record an administrator refund and cancel a PAID order.

        Stock held by the paid order is returned. Moving the money is done
        outside this service.

        Raises:
            RefundError: If the order is not PAID or the amount is invalid
        """
        if order.status != OrderStatus.PAID:
            raise RefundError(
                f"Only paid orders can be refunded; order is {order.status.value}",
                order_id=str(order.id),
                status=order.status.value,
            )

        refund_amount = Decimal(order.total_price) if amount is None else Decimal(amount)
        if refund_amount <= 0 or refund_amount > Decimal(order.total_price):
            raise RefundError(
                "Refund amount must be positive and cannot exceed the order total",
                order_id=str(order.id),
                amount=str(refund_amount),
                total_price=str(order.total_price),
            )

        now = utcnow()
        return await self._transition(
            order,
            OrderStatus.CANCELLED,
            source=TransitionSource.REFUND,
            changed_by=processed_by,
            reason=reason,
            values={
                "refund_amount": refund_amount,
                "refund_reason": reason,
                "refund_processed_by": processed_by,
                "refunded_at": now,
                "payment_status_text": "Refunded",
                "payment_updated_at": now,
            },
            metadata={"refund_amount": str(refund_amount)},
        )

    async def switch_payment_method(
        self,
        order: Order,
        new_method: PaymentMethod,
        changed_by: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Change an unpaid order's payment method and re-route it.

        Into cash on delivery: stock is taken and the order becomes CONFIRMED.
        Out of cash on delivery: stock is returned and it goes back to
        PENDING. Between two deferred methods only the method changes.

        Raises:
            InvalidTransitionError: If a payment signal already landed or
                the order is past the point of re-routing
            InsufficientStockError: If switching to cash on delivery and
                stock is gone
        """
        if new_method == order.payment_method:
            return order

        current = order.status
        decision = self.router.route(new_method)
        target = decision.initial_status

        if (
            current not in PAYMENT_METHOD_SWITCH_TRANSITIONS
            or order.is_paid
            or order.payment_result_id is not None
            or order.payment_status_text == STOCK_UNAVAILABLE_TEXT
        ):
            raise InvalidTransitionError(
                current,
                target,
                allowed=set(),
                order_id=str(order.id),
                reason="payment method can only change before any payment is received",
            )

        values: dict[str, Any] = {"payment_method": new_method}
        if decision.method.category == PaymentCategory.GATEWAY:
            values["payment_reference"] = order.payment_reference or order.order_number

        if target == current:
            order_id = order.id
            try:
                claimed = await self.repository.conditional_status_update(
                    order_id, current, current, values
                )
                if not claimed:
                    raise ConcurrentTransitionError(order_id, current, current)
                await self.session.commit()
            except ConcurrentTransitionError:
                await self.session.rollback()
                fresh = await self.repository.get_order_or_raise(order_id)
                raise InvalidTransitionError(fresh.status, target, order_id=str(order_id))
            except BaseException:
                await self.session.rollback()
                raise
            await self.session.refresh(order)
            logger.info(
                "Payment method changed",
                order_id=str(order_id),
                payment_method=new_method.value,
            )
            return order

        return await self._transition(
            order,
            target,
            source=TransitionSource.PAYMENT_METHOD_SWITCH,
            changed_by=changed_by,
            reason=f"Payment method changed to {new_method.display_name}",
            values=values,
            metadata={"from_method": order.payment_method.value, "to_method": new_method.value},
            table=PAYMENT_METHOD_SWITCH_TRANSITIONS,
            notify=False,
        )

    async def _transition(
        self,
        order: Order,
        target: OrderStatus,
        *,
        source: TransitionSource,
        changed_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
        values: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
        table=None,
        notify: bool = True,
    ) -> Order:
        """
        One committed transition for a human-initiated change.

        A lost race is reported as an invalid transition from the status
        the order actually has now.
        """
        order_id = order.id
        kwargs: dict[str, Any] = {}
        if table is not None:
            kwargs["table"] = table

        try:
            await self.state_machine.apply_transition(
                order,
                target,
                source=source,
                changed_by=changed_by,
                reason=reason,
                values=values,
                metadata=metadata,
                **kwargs,
            )
        except ConcurrentTransitionError:
            await self.session.rollback()
            fresh = await self.repository.get_order_or_raise(order_id)
            raise InvalidTransitionError(
                fresh.status,
                target,
                allowed=get_allowed_order_transitions(fresh.status),
                order_id=str(order_id),
            )
        except BaseException:
            await self.session.rollback()
            raise

        await self.session.commit()
        if notify:
            await self._notify_status_changed(order, target)
        return order

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _notify_status_changed(self, order: Order, new_status: OrderStatus) -> None:
        """Schedule the buyer's status-change message; never raises."""
        if self.dispatcher is None:
            return
        try:
            buyer = (
                await self.session.execute(select(User).where(User.id == order.buyer_id))
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Could not load buyer for notification",
                order_id=str(order.id),
                error=str(e),
            )
            return
        if buyer is None:
            return

        self.dispatcher.dispatch_status_changed(
            OrderNotice.from_order(order), Recipient.from_user(buyer), new_status
        )
