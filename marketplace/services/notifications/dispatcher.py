"""
Notification dispatcher.

Sends buyer confirmations, per-seller new-order alerts and status-change
messages. Callers dispatch only after their state change has committed. The
dispatcher renders each message in-process and hands the finished text to a
Celery task (``tasks.send_email_task`` / ``tasks.send_sms_task``); delivery
and its retries happen on a worker. Rendering or queueing failures are
logged here and never reach the caller.

The dispatcher only ever sees immutable snapshots (``OrderNotice``,
``Recipient``), never ORM objects.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional

from celery import Task

from marketplace.core.config import Settings, get_settings
from marketplace.core.logging import get_logger
from marketplace.services.notifications.tasks import send_email_task, send_sms_task
from marketplace.services.notifications.templates import TemplateEngine
from marketplace.services.orders.enums import OrderStatus, PaymentMethod

logger = get_logger(__name__)


@dataclass(frozen=True)
class Recipient:
    user_id: uuid.UUID
    email: str
    name: str
    phone: Optional[str] = None

    @classmethod
    def from_user(cls, user: Any) -> "Recipient":
        return cls(user_id=user.id, email=user.email, name=user.full_name, phone=user.phone)


@dataclass(frozen=True)
class ItemNotice:
    product_id: uuid.UUID
    seller_id: uuid.UUID
    name: str
    price: Decimal
    quantity: int

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class OrderNotice:
    """Snapshot of an order taken after its state change committed."""

    order_id: uuid.UUID
    order_number: str
    status: OrderStatus
    payment_method: PaymentMethod
    total_price: Decimal
    shipping_city: str
    items: tuple[ItemNotice, ...]
    tracking_number: Optional[str] = None

    @classmethod
    def from_order(cls, order: Any) -> "OrderNotice":
        return cls(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            payment_method=order.payment_method,
            total_price=Decimal(order.total_price),
            shipping_city=order.shipping_city,
            tracking_number=order.tracking_number,
            items=tuple(
                ItemNotice(
                    product_id=item.product_id,
                    seller_id=item.seller_id,
                    name=item.name,
                    price=Decimal(item.price),
                    quantity=item.quantity,
                )
                for item in order.items
            ),
        )

    @property
    def status_name(self) -> str:
        return self.status.display_name

    @property
    def payment_method_name(self) -> str:
        return self.payment_method.display_name

    def items_for_seller(self, seller_id: uuid.UUID) -> list[ItemNotice]:
        return [item for item in self.items if item.seller_id == seller_id]


class NotificationDispatcher:
    """
    Renders order notifications and queues them for delivery.

    Enqueueing happens after the caller's commit. A notification that cannot
    be rendered or queued is logged and dropped; the order flow never sees it.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        template_engine: Optional[TemplateEngine] = None,
        email_task: Optional[Task] = None,
        sms_task: Optional[Task] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.template_engine = template_engine or TemplateEngine()
        self.email_task = email_task or send_email_task
        self.sms_task = sms_task or send_sms_task

    @property
    def enabled(self) -> bool:
        return self.settings.notifications_enabled

    def _enqueue(
        self,
        kind: str,
        template_name: str,
        recipient: Recipient,
        context: dict[str, Any],
        **log_context: Any,
    ) -> bool:
        """
        Render ``template_name`` for ``recipient`` and queue the deliveries.

        Returns:
            True if the email (and SMS, where applicable) was queued
        """
        if not self.enabled:
            logger.debug("Notifications disabled, skipping", kind=kind, **log_context)
            return False

        context = {"recipient": recipient, **context}
        try:
            email = self.template_engine.render_email(template_name, context)
            self.email_task.delay(
                recipient.email, email.subject, email.html_body, email.text_body
            )

            if (
                self.settings.sms_enabled
                and recipient.phone
                and self.template_engine.has_sms_template(template_name)
            ):
                message = self.template_engine.render_sms(template_name, context)
                self.sms_task.delay(recipient.phone, message)
        except Exception as e:
            logger.error(
                "Notification could not be queued",
                kind=kind,
                error=str(e),
                error_type=type(e).__name__,
                **log_context,
            )
            return False

        logger.info("Notification queued", kind=kind, **log_context)
        return True

    def notify_buyer_order_confirmed(
        self,
        order: OrderNotice,
        buyer: Recipient,
        instruction: Optional[str] = None,
    ) -> bool:
        return self._enqueue(
            "buyer_order_confirmed",
            "order_confirmed",
            buyer,
            {"order": order, "instruction": instruction},
            order_id=str(order.order_id),
        )

    def notify_seller_new_order(
        self,
        order: OrderNotice,
        seller: Recipient,
        items: Iterable[ItemNotice],
    ) -> bool:
        items = list(items)
        seller_total = sum((item.subtotal for item in items), Decimal("0.00"))
        return self._enqueue(
            "seller_new_order",
            "seller_new_order",
            seller,
            {"order": order, "items": items, "seller_total": seller_total},
            order_id=str(order.order_id),
            seller_id=str(seller.user_id),
        )

    def notify_status_changed(
        self,
        order: OrderNotice,
        buyer: Recipient,
        new_status: OrderStatus,
    ) -> bool:
        return self._enqueue(
            "status_changed",
            "status_changed",
            buyer,
            {"order": order, "new_status_name": new_status.display_name},
            order_id=str(order.order_id),
            new_status=new_status.value,
        )

    def dispatch_order_placed(
        self,
        order: OrderNotice,
        buyer: Recipient,
        sellers: Iterable[Recipient],
        instruction: Optional[str] = None,
    ) -> None:
        """Buyer confirmation plus one alert per distinct seller in the order."""
        self.notify_buyer_order_confirmed(order, buyer, instruction)
        for seller in sellers:
            items = order.items_for_seller(seller.user_id)
            if items:
                self.notify_seller_new_order(order, seller, items)

    def dispatch_status_changed(
        self, order: OrderNotice, buyer: Recipient, new_status: OrderStatus
    ) -> None:
        self.notify_status_changed(order, buyer, new_status)


_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
