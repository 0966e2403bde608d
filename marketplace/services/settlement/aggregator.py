"""
Seller settlement aggregator.

Computes what each seller is owed from the orders that contain their
products. A single order can hold items from several sellers; every figure
here is computed over the requesting seller's slice of the order only.
"""

import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import Settings, get_settings
from marketplace.core.logging import get_logger
from marketplace.database.models.order import Order, OrderItem
from marketplace.services.orders.enums import OrderStatus
from marketplace.services.orders.repository import OrderRepository

logger = get_logger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class SellerEarnings:
    seller_id: uuid.UUID
    total_earnings: Decimal
    total_orders: int
    pending_orders: int
    commission: Decimal
    net_earnings: Decimal


@dataclass(frozen=True)
class SellerOrderView:
    """An order seen from one seller: only their items and their subtotal."""

    order: Order
    items: list[OrderItem]
    seller_total: Decimal


class SettlementAggregator:
    """Read-only per-seller views over orders."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        repository: Optional[OrderRepository] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository or OrderRepository(session)

    async def earnings_for(self, seller_id: uuid.UUID) -> SellerEarnings:
        """
        Earnings summary for one seller.

        ``total_earnings`` counts only orders whose money has been received
        (PAID or later with ``paid_at`` set). ``pending_orders`` counts the
        seller's orders still awaiting shipment.
        """
        orders = await self.repository.list_seller_orders(seller_id)

        total_earnings = Decimal("0.00")
        pending_orders = 0
        for order in orders:
            if order.money_received:
                total_earnings += order.subtotal_for_seller(seller_id)
            if order.awaiting_shipment:
                pending_orders += 1

        rate = Decimal(str(self.settings.platform_commission_rate))
        commission = (total_earnings * rate).quantize(CENT, rounding=ROUND_HALF_UP)
        total_earnings = total_earnings.quantize(CENT, rounding=ROUND_HALF_UP)

        earnings = SellerEarnings(
            seller_id=seller_id,
            total_earnings=total_earnings,
            total_orders=len(orders),
            pending_orders=pending_orders,
            commission=commission,
            net_earnings=total_earnings - commission,
        )
        logger.info(
            "Seller earnings computed",
            seller_id=str(seller_id),
            total_earnings=str(earnings.total_earnings),
            total_orders=earnings.total_orders,
            pending_orders=earnings.pending_orders,
        )
        return earnings

    async def seller_orders(
        self,
        seller_id: uuid.UUID,
        statuses: Optional[list[OrderStatus]] = None,
    ) -> list[SellerOrderView]:
        orders = await self.repository.list_seller_orders(seller_id, statuses)
        return [
            SellerOrderView(
                order=order,
                items=order.items_for_seller(seller_id),
                seller_total=order.subtotal_for_seller(seller_id),
            )
            for order in orders
        ]
