"""
Order API endpoints.

A thin layer over ``OrderService``, ``ReconciliationEngine`` and
``SettlementAggregator``: it parses requests, checks roles, and translates
domain errors to HTTP responses. All business rules live in the services.
"""

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request, status

from marketplace.api.deps import (
    CurrentAdmin,
    CurrentSeller,
    CurrentSellerOrAdmin,
    CurrentUser,
    OrderServiceDep,
    SettlementDep,
)
from marketplace.core.logging import get_logger
from marketplace.schemas.orders import (
    CallbackAckResponse,
    OrderCancelRequest,
    OrderCreateRequest,
    OrderItemResponse,
    OrderPlacedResponse,
    OrderResponse,
    OrderStatusUpdate,
    PaymentInstructionResponse,
    PaymentMethodUpdate,
    PaymentResultResponse,
    RefundRequest,
    SellerEarningsResponse,
    SellerOrderResponse,
    ShippingInfoResponse,
)
from marketplace.services.catalog.reader import ProductNotFoundError
from marketplace.services.inventory.ledger import InsufficientStockError
from marketplace.services.orders.enums import OrderStatus
from marketplace.services.orders.repository import OrderNotFoundError
from marketplace.services.orders.service import (
    InvalidPaymentMethodError,
    NotOwnerError,
    OrderValidationError,
    PlacedOrder,
)
from marketplace.services.orders.state_machine import StateTransitionError
from marketplace.services.payments.gateway import GatewayNotConfiguredError, GatewaySignatureError
from marketplace.services.payments.reconciliation import ReconciliationResult, RefundError

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

DOMAIN_ERRORS = (
    OrderValidationError,
    InvalidPaymentMethodError,
    RefundError,
    GatewaySignatureError,
    NotOwnerError,
    OrderNotFoundError,
    ProductNotFoundError,
    InsufficientStockError,
    StateTransitionError,
)

_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (NotOwnerError, status.HTTP_403_FORBIDDEN),
    (OrderNotFoundError, status.HTTP_404_NOT_FOUND),
    (ProductNotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientStockError, status.HTTP_409_CONFLICT),
    (StateTransitionError, status.HTTP_409_CONFLICT),
    (GatewayNotConfiguredError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_exception(error: Exception) -> HTTPException:
    """Map a domain error to an HTTP error carrying its actionable context."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_cls, code in _STATUS_BY_ERROR:
        if isinstance(error, error_cls):
            status_code = code
            break

    detail: dict[str, Any] = {"message": str(error)}
    code = getattr(error, "code", None)
    if code:
        detail["code"] = code
    context = getattr(error, "context", None)
    if context:
        detail["context"] = context
    if isinstance(error, StateTransitionError):
        detail["current_status"] = error.current_state.value
        detail["target_status"] = error.target_state.value

    logger.info(
        "Request rejected",
        status_code=status_code,
        error_type=type(error).__name__,
        error=str(error),
    )
    return HTTPException(status_code=status_code, detail=detail)


def _placed_response(placed: PlacedOrder) -> OrderPlacedResponse:
    return OrderPlacedResponse(
        order=OrderResponse.from_order(placed.order),
        payment=PaymentInstructionResponse(
            kind=placed.instruction.kind.value,
            message=placed.instruction.message,
            redirect_url=placed.instruction.redirect_url,
            details=dict(placed.instruction.details),
        ),
    )


def _result_response(result: ReconciliationResult) -> PaymentResultResponse:
    return PaymentResultResponse(
        outcome=result.outcome.value,
        success=result.success,
        message=result.message,
        allow_manual_confirmation=result.allow_manual_confirmation,
        gateway_status=result.gateway_status,
        order=OrderResponse.from_order(result.order) if result.order is not None else None,
    )


@router.post(
    "/",
    response_model=OrderPlacedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
)
async def create_order(
    request: OrderCreateRequest,
    current_user: CurrentUser,
    service: OrderServiceDep,
) -> OrderPlacedResponse:
    """
    Place an order from a cart.

    Returns the order with either a gateway redirect or payment instructions.
    """
    try:
        placed = await service.create_order(
            buyer=current_user,
            shipping=request.shipping.model_dump(),
            cart_items=[item.model_dump() for item in request.items],
            payment_method=request.payment_method,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return _placed_response(placed)


@router.get("/mine", response_model=list[OrderResponse], summary="List my orders")
async def list_my_orders(
    current_user: CurrentUser,
    service: OrderServiceDep,
) -> list[OrderResponse]:
    orders = await service.list_my_orders(current_user)
    return [OrderResponse.from_order(order) for order in orders]


@router.get(
    "/seller/orders",
    response_model=list[SellerOrderResponse],
    summary="List orders containing the seller's products",
)
async def list_seller_orders(
    current_user: CurrentSeller,
    settlement: SettlementDep,
    status_filter: Optional[list[OrderStatus]] = Query(None, alias="status"),
) -> list[SellerOrderResponse]:
    views = await settlement.seller_orders(current_user.id, status_filter)
    return [
        SellerOrderResponse(
            id=view.order.id,
            order_number=view.order.order_number,
            status=view.order.status,
            payment_method=view.order.payment_method,
            paid_at=view.order.paid_at,
            shipping=ShippingInfoResponse(
                full_name=view.order.shipping_full_name,
                address=view.order.shipping_address,
                city=view.order.shipping_city,
                phone=view.order.shipping_phone,
            ),
            tracking_number=view.order.tracking_number,
            items=[OrderItemResponse.model_validate(item) for item in view.items],
            seller_total=view.seller_total,
            created_at=view.order.created_at,
        )
        for view in views
    ]


@router.get(
    "/seller/earnings",
    response_model=SellerEarningsResponse,
    summary="Seller earnings summary",
)
async def seller_earnings(
    current_user: CurrentSeller,
    settlement: SettlementDep,
) -> SellerEarningsResponse:
    earnings = await settlement.earnings_for(current_user.id)
    return SellerEarningsResponse.model_validate(earnings)


@router.post(
    "/paynow/callback",
    response_model=CallbackAckResponse,
    summary="Payment gateway status callback",
)
async def paynow_callback(request: Request, service: OrderServiceDep) -> CallbackAckResponse:
    """
    Form-encoded status update posted by the gateway.

    Unknown references and repeated deliveries are acknowledged with 200 so
    the gateway does not keep retrying; a bad hash or an unconfigured gateway
    is rejected.
    """
    form = await request.form()
    fields = {key: str(value) for key, value in form.items()}
    try:
        result = await service.engine.handle_callback(fields)
    except (GatewaySignatureError, GatewayNotConfiguredError) as e:
        raise to_http_exception(e) from e
    return CallbackAckResponse(outcome=result.outcome.value, message=result.message)


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order")
async def get_order(
    order_id: UUID,
    current_user: CurrentUser,
    service: OrderServiceDep,
) -> OrderResponse:
    try:
        order = await service.get_order(order_id, current_user)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.put("/{order_id}/status", response_model=OrderResponse, summary="Update order status")
async def update_order_status(
    order_id: UUID,
    request: OrderStatusUpdate,
    current_user: CurrentSellerOrAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    try:
        order = await service.update_status(
            order_id, current_user, request.status, tracking_number=request.tracking_number
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.post(
    "/{order_id}/verify-payment",
    response_model=PaymentResultResponse,
    summary="Poll the gateway for a pending order's payment",
)
async def verify_payment(
    order_id: UUID,
    current_user: CurrentSellerOrAdmin,
    service: OrderServiceDep,
) -> PaymentResultResponse:
    try:
        result = await service.verify_payment(order_id, current_user)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return _result_response(result)


@router.post(
    "/{order_id}/confirm-payment",
    response_model=PaymentResultResponse,
    summary="Manually confirm a pending order's payment",
)
async def confirm_payment(
    order_id: UUID,
    current_user: CurrentSellerOrAdmin,
    service: OrderServiceDep,
) -> PaymentResultResponse:
    try:
        result = await service.confirm_payment(order_id, current_user)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return _result_response(result)


@router.post("/{order_id}/cancel", response_model=OrderResponse, summary="Cancel order")
async def cancel_order(
    order_id: UUID,
    current_user: CurrentUser,
    service: OrderServiceDep,
    request: Optional[OrderCancelRequest] = None,
) -> OrderResponse:
    try:
        order = await service.cancel_order(
            order_id, current_user, reason=request.reason if request else None
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.put(
    "/{order_id}/payment-method",
    response_model=OrderPlacedResponse,
    summary="Switch an unpaid order's payment method",
)
async def switch_payment_method(
    order_id: UUID,
    request: PaymentMethodUpdate,
    current_user: CurrentUser,
    service: OrderServiceDep,
) -> OrderPlacedResponse:
    try:
        placed = await service.switch_payment_method(
            order_id, current_user, request.payment_method
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return _placed_response(placed)


@router.put("/{order_id}/refund", response_model=OrderResponse, summary="Refund a paid order")
async def refund_order(
    order_id: UUID,
    request: RefundRequest,
    current_user: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    try:
        order = await service.refund_order(
            order_id, current_user, reason=request.reason, amount=request.amount
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)
