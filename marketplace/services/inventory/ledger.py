"""
Stock ledger.

The only component allowed to change ``products.quantity``. Every decrement
is a single conditional UPDATE (``quantity >= :qty`` in the WHERE clause), so
two concurrent reservations can never both succeed when their combined
quantity exceeds what is available, and quantity can never go negative.

The ledger works inside the caller's transaction and never commits. A
failed multi-line reservation undoes its own earlier lines before raising,
so the caller sees all-or-nothing even before it rolls back.
"""

import uuid
from collections import OrderedDict
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.logging import get_logger
from marketplace.database.models.product import Product

logger = get_logger(__name__)


class StockLedgerError(Exception):
    """Base exception for stock ledger operations."""

    def __init__(self, message: str, code: str, **context: Any):
        super().__init__(message)
        self.code = code
        self.context = context


class InsufficientStockError(StockLedgerError):
    """Raised when a product does not have enough units for a reservation."""

    def __init__(
        self,
        product_id: uuid.UUID,
        requested: int,
        available: int,
        product_name: Optional[str] = None,
    ):
        label = product_name or str(product_id)
        super().__init__(
            f"Insufficient stock for {label}: requested {requested}, available {available}",
            code="INSUFFICIENT_STOCK",
            product_id=str(product_id),
            product_name=product_name,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class UnknownProductError(StockLedgerError):
    """Raised when restocking a product that no longer exists."""

    def __init__(self, product_id: uuid.UUID):
        super().__init__(
            f"Product {product_id} not found in stock ledger",
            code="UNKNOWN_PRODUCT",
            product_id=str(product_id),
        )


def merge_lines(lines: Iterable[tuple[uuid.UUID, int]]) -> list[tuple[uuid.UUID, int]]:
    """
    Collapse repeated products into one line each, in a stable order.

    Lines are sorted by product id so concurrent multi-line reservations
    always touch rows in the same order.
    """
    merged: "OrderedDict[uuid.UUID, int]" = OrderedDict()
    for product_id, quantity in lines:
        merged[product_id] = merged.get(product_id, 0) + quantity
    return sorted(merged.items(), key=lambda line: str(line[0]))


class StockLedger:
    """Atomic per-product decrement and restock."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def available(self, product_id: uuid.UUID) -> Optional[int]:
        """Current available quantity, or None if the product is unknown."""
        result = await self.session.execute(
            select(Product.quantity).where(Product.id == product_id)
        )
        return result.scalar_one_or_none()

    async def reserve_and_decrement(self, product_id: uuid.UUID, quantity: int) -> None:
        """
        Take ``quantity`` units of a product, or fail without changing it.

        Raises:
            ValueError: If quantity is not positive
            InsufficientStockError: If fewer than ``quantity`` units remain
        """
        if quantity <= 0:
            raise ValueError(f"Quantity must be positive, got {quantity}")

        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.quantity >= quantity)
            .values(quantity=Product.quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        if result.rowcount != 1:
            available = await self.available(product_id)
            logger.warning(
                "Stock reservation rejected",
                product_id=str(product_id),
                requested=quantity,
                available=available,
            )
            raise InsufficientStockError(
                product_id=product_id,
                requested=quantity,
                available=available or 0,
            )

        logger.info(
            "Stock decremented",
            product_id=str(product_id),
            quantity=quantity,
        )

    async def restock(self, product_id: uuid.UUID, quantity: int) -> None:
        """
        Return ``quantity`` units of a product to stock.

        Raises:
            ValueError: If quantity is not positive
            UnknownProductError: If the product row no longer exists
        """
        if quantity <= 0:
            raise ValueError(f"Quantity must be positive, got {quantity}")

        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(quantity=Product.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        if result.rowcount != 1:
            logger.error("Restock target missing", product_id=str(product_id))
            raise UnknownProductError(product_id)

        logger.info(
            "Stock restored",
            product_id=str(product_id),
            quantity=quantity,
        )

    async def reserve_many(self, lines: Iterable[tuple[uuid.UUID, int]]) -> None:
        """
        Reserve every line or none of them.

        Args:
            lines: (product id, quantity) pairs; repeated products are merged

        Raises:
            InsufficientStockError: For the first line that cannot be met;
                lines already taken are restocked before raising
        """
        taken: list[tuple[uuid.UUID, int]] = []
        try:
            for product_id, quantity in merge_lines(lines):
                await self.reserve_and_decrement(product_id, quantity)
                taken.append((product_id, quantity))
        except InsufficientStockError:
            for product_id, quantity in reversed(taken):
                await self.restock(product_id, quantity)
            if taken:
                logger.info("Partial reservation undone", lines_restored=len(taken))
            raise

    async def restock_many(self, lines: Iterable[tuple[uuid.UUID, int]]) -> None:
        for product_id, quantity in merge_lines(lines):
            await self.restock(product_id, quantity)
