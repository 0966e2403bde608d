"""
Order Pydantic schemas for API request/response validation.

Requests carry only what the buyer may decide: product ids, quantities,
shipping details and a payment method. Prices are never accepted from the
client. Responses are built from ORM objects with ``from_attributes``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketplace.services.orders.enums import OrderStatus, PaymentMethod, PaymentSource


class ShippingInfoRequest(BaseModel):
    """Where the order is delivered."""

    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(..., min_length=1, max_length=200, description="Recipient name")
    address: str = Field(..., min_length=1, max_length=500, description="Street address")
    city: str = Field(..., min_length=1, max_length=100, description="City")
    phone: str = Field(..., min_length=5, max_length=30, description="Contact phone")


class CartItemRequest(BaseModel):
    """One cart line. Any price sent by the client is ignored."""

    product_id: UUID = Field(..., description="Catalog product identifier")
    quantity: int = Field(..., gt=0, le=1000, description="Units requested")


class OrderCreateRequest(BaseModel):
    shipping: ShippingInfoRequest
    items: list[CartItemRequest] = Field(..., min_length=1, description="Cart lines")
    payment_method: str = Field(
        ...,
        description="cash_on_delivery, ecocash, bank_transfer or paynow",
    )


class OrderStatusUpdate(BaseModel):
    """Seller/admin status change request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    status: OrderStatus = Field(..., description="Target order status")
    tracking_number: Optional[str] = Field(None, max_length=100)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v


class PaymentMethodUpdate(BaseModel):
    payment_method: str = Field(..., description="New payment method")


class OrderCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RefundRequest(BaseModel):
    """Administrator refund. The amount defaults to the order total."""

    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    reason: str = Field(..., min_length=1, max_length=500)


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: UUID
    seller_id: UUID
    name: str
    price: Decimal
    quantity: int
    image: Optional[str] = None
    subtotal: Decimal


class ShippingInfoResponse(BaseModel):
    full_name: str
    address: str
    city: str
    phone: str


class RefundResponse(BaseModel):
    amount: Decimal
    reason: Optional[str] = None
    processed_by: Optional[UUID] = None
    refunded_at: Optional[datetime] = None


class OrderResponse(BaseModel):
    """Complete order response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    buyer_id: UUID
    status: OrderStatus
    payment_method: PaymentMethod
    total_price: Decimal
    items: list[OrderItemResponse]
    shipping: ShippingInfoResponse
    payment_result_id: Optional[str] = None
    payment_status_text: Optional[str] = None
    payment_updated_at: Optional[datetime] = None
    paid_source: Optional[PaymentSource] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    tracking_number: Optional[str] = None
    refund: Optional[RefundResponse] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Any) -> "OrderResponse":
        refund = None
        if order.refund_amount is not None:
            refund = RefundResponse(
                amount=order.refund_amount,
                reason=order.refund_reason,
                processed_by=order.refund_processed_by,
                refunded_at=order.refunded_at,
            )
        return cls(
            id=order.id,
            order_number=order.order_number,
            buyer_id=order.buyer_id,
            status=order.status,
            payment_method=order.payment_method,
            total_price=order.total_price,
            items=[OrderItemResponse.model_validate(item) for item in order.items],
            shipping=ShippingInfoResponse(
                full_name=order.shipping_full_name,
                address=order.shipping_address,
                city=order.shipping_city,
                phone=order.shipping_phone,
            ),
            payment_result_id=order.payment_result_id,
            payment_status_text=order.payment_status_text,
            payment_updated_at=order.payment_updated_at,
            paid_source=order.paid_source,
            paid_at=order.paid_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
            tracking_number=order.tracking_number,
            refund=refund,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class PaymentInstructionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: str
    message: str
    redirect_url: Optional[str] = None
    details: dict[str, str] = Field(default_factory=dict)


class OrderPlacedResponse(BaseModel):
    """A created (or re-routed) order plus what the buyer must do to pay."""

    order: OrderResponse
    payment: PaymentInstructionResponse


class PaymentResultResponse(BaseModel):
    """Outcome of a verify or confirm payment request."""

    outcome: str
    success: bool
    message: str
    allow_manual_confirmation: bool = False
    gateway_status: Optional[str] = None
    order: Optional[OrderResponse] = None


class CallbackAckResponse(BaseModel):
    outcome: str
    message: str


class SellerOrderResponse(BaseModel):
    """An order as one seller sees it: only their items and subtotal."""

    id: UUID
    order_number: str
    status: OrderStatus
    payment_method: PaymentMethod
    paid_at: Optional[datetime] = None
    shipping: ShippingInfoResponse
    tracking_number: Optional[str] = None
    items: list[OrderItemResponse]
    seller_total: Decimal
    created_at: datetime


class SellerEarningsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    seller_id: UUID
    total_earnings: Decimal
    total_orders: int
    pending_orders: int
    commission: Decimal
    net_earnings: Decimal
