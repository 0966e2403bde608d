"""
Order, order item and status history models.

An order's items are snapshots taken at creation time: name, unit price,
image and owning seller are copied from the catalog and never change
afterwards. Status history rows are append-only and written in the same
transaction as the change they record.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.database.base import BaseModel
from marketplace.services.orders.enums import (
    AWAITING_SHIPMENT_STATUSES,
    MONEY_RECEIVED_STATUSES,
    OrderStatus,
    PaymentMethod,
    PaymentSource,
    TransitionSource,
    holds_stock,
)

if TYPE_CHECKING:
    from marketplace.database.models.user import User


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def _order_status_type() -> SQLEnum:
    return SQLEnum(
        OrderStatus,
        name="order_status",
        create_constraint=True,
        values_callable=_enum_values,
    )


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Order(BaseModel):
    """
    A buyer's committed purchase tracked through its status lifecycle.

    Attributes:
        order_number: Human-readable number, also the gateway reference
        buyer_id: Buyer who placed the order
        status: Current lifecycle status
        payment_method: Method chosen by the buyer
        total_price: Sum of item subtotals computed at creation
        shipping_*: Delivery details captured at checkout
        payment_reference: Reference sent to the payment gateway
        payment_result_id: External reference reported back by a payment signal
        payment_status_text: Human-readable payment status
        payment_updated_at: When payment metadata last changed
        payment_poll_url: Gateway URL used to poll transaction status
        payment_redirect_url: Hosted payment page for the buyer
        paid_at / paid_source: When and through which signal payment landed
        shipped_at / delivered_at / cancelled_at: Lifecycle timestamps
        tracking_number: Carrier tracking number
        refund_*: Refund record written by an administrator
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )

    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Buyer who placed the order",
    )

    status: Mapped[OrderStatus] = mapped_column(
        _order_status_type(),
        nullable=False,
        default=OrderStatus.PENDING,
        comment="Current order status",
    )

    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(
            PaymentMethod,
            name="payment_method",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        comment="Payment method chosen by the buyer",
    )

    total_price: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Sum of item subtotals computed at creation",
    )

    # Shipping details
    shipping_full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    shipping_address: Mapped[str] = mapped_column(String(500), nullable=False)
    shipping_city: Mapped[str] = mapped_column(String(120), nullable=False)
    shipping_phone: Mapped[str] = mapped_column(String(32), nullable=False)

    # Payment metadata
    payment_reference: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
        comment="Reference sent to the payment gateway",
    )

    payment_result_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="External reference reported by the payment signal",
    )

    payment_status_text: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Human-readable payment status",
    )

    payment_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    payment_poll_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    payment_redirect_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    paid_source: Mapped[Optional[PaymentSource]] = mapped_column(
        SQLEnum(
            PaymentSource,
            name="payment_source",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=True,
        comment="Signal that moved the order to paid",
    )

    # Fulfilment
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    # Refund record
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=True,
    )
    refund_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    refund_processed_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    buyer: Mapped["User"] = relationship(
        "User",
        back_populates="orders",
        foreign_keys=[buyer_id],
        lazy="noload",
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )

    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        lazy="noload",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        # Buyer's order list, newest first
        Index("ix_orders_buyer_created", "buyer_id", "created_at"),
        Index("ix_orders_status_created", "status", "created_at"),
        CheckConstraint("total_price >= 0", name="ck_orders_total_price_non_negative"),
        CheckConstraint(
            "refund_amount IS NULL OR (refund_amount >= 0 AND refund_amount <= total_price)",
            name="ck_orders_refund_within_total",
        ),
        {"comment": "Buyer orders with payment and fulfilment tracking"},
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, order_number={self.order_number}, "
            f"status={self.status.value if self.status else None}, "
            f"total_price={self.total_price})>"
        )

    @property
    def holds_stock(self) -> bool:
        return holds_stock(self.status)

    @property
    def is_paid(self) -> bool:
        return self.paid_at is not None

    @property
    def money_received(self) -> bool:
        """Whether the buyer's payment has landed for settlement purposes."""
        return self.status in MONEY_RECEIVED_STATUSES and self.paid_at is not None

    @property
    def awaiting_shipment(self) -> bool:
        """PAID orders collected on delivery have already shipped."""
        return self.status in AWAITING_SHIPMENT_STATUSES and self.shipped_at is None

    @property
    def seller_ids(self) -> set[uuid.UUID]:
        return {item.seller_id for item in self.items}

    def items_for_seller(self, seller_id: uuid.UUID) -> list["OrderItem"]:
        """The slice of this order's items owned by ``seller_id``."""
        return [item for item in self.items if item.seller_id == seller_id]

    def subtotal_for_seller(self, seller_id: uuid.UUID) -> Decimal:
        return sum(
            (item.subtotal for item in self.items_for_seller(seller_id)),
            Decimal("0.00"),
        )


class OrderItem(BaseModel):
    """
    Snapshot of one cart line at the moment the order was placed.

    Attributes:
        order_id: Parent order
        position: Line position within the order
        product_id: Catalog product the line refers to
        seller_id: Seller who owned the product when the order was placed
        name: Product name at creation time
        price: Unit price at creation time
        quantity: Units ordered
        image: Product image at creation time
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="Parent order identifier",
    )

    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Line position within the order",
    )

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Ordered product",
    )

    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Seller owning the product at creation time",
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    price: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Unit price at creation time",
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    image: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="items",
        lazy="noload",
    )

    __table_args__ = (
        Index("ix_order_items_order", "order_id"),
        # Seller order lists and earnings
        Index("ix_order_items_seller", "seller_id"),
        Index("ix_order_items_product", "product_id"),
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("price >= 0", name="ck_order_items_price_non_negative"),
        {"comment": "Line items snapshotted at order creation"},
    )

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


class OrderStatusHistory(BaseModel):
    """
    Append-only audit record of one status change.

    ``from_status`` is empty for the row written when the order is created.
    """

    __tablename__ = "order_status_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="Parent order identifier",
    )

    from_status: Mapped[Optional[OrderStatus]] = mapped_column(
        _order_status_type(),
        nullable=True,
        comment="Previous status",
    )

    to_status: Mapped[OrderStatus] = mapped_column(
        _order_status_type(),
        nullable=False,
        comment="New status",
    )

    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="User who made the change, empty for gateway signals",
    )

    source: Mapped[TransitionSource] = mapped_column(
        SQLEnum(
            TransitionSource,
            name="transition_source",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        comment="Signal or action that caused the change",
    )

    reason: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Reason for status change",
    )

    details: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
        comment="Additional context for the change",
    )

    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="status_history",
        lazy="noload",
    )

    __table_args__ = (
        Index("ix_order_status_history_order_created", "order_id", "created_at"),
        {"comment": "Order status change history for audit trail"},
    )

    def __repr__(self) -> str:
        from_value = self.from_status.value if self.from_status else None
        return (
            f"<OrderStatusHistory(order_id={self.order_id}, "
            f"from_status={from_value}, to_status={self.to_status.value})>"
        )
