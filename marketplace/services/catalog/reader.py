"""
Catalog snapshot reader.

Returns the authoritative price, name, image, owner and available quantity of
products by identifier. Nothing here writes; the values read are a snapshot
used to price an order and to pre-check stock before the ledger's
conditional decrement closes the race.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.logging import get_logger
from marketplace.database.models.product import Product

logger = get_logger(__name__)


class CatalogError(Exception):
    """Base exception for catalog reads."""

    def __init__(self, message: str, code: str, **context: Any):
        super().__init__(message)
        self.code = code
        self.context = context


class ProductNotFoundError(CatalogError):
    """Raised when one or more requested products do not exist."""

    def __init__(self, product_ids: Iterable[uuid.UUID]):
        missing = sorted(str(pid) for pid in product_ids)
        super().__init__(
            f"Product not found: {', '.join(missing)}",
            code="PRODUCT_NOT_FOUND",
            product_ids=missing,
        )
        self.product_ids = missing


@dataclass(frozen=True)
class ProductSnapshot:
    """Catalog values of a product at the moment it was read."""

    id: uuid.UUID
    name: str
    price: Decimal
    quantity: int
    seller_id: uuid.UUID
    image: Optional[str] = None

    @classmethod
    def from_model(cls, product: Product) -> "ProductSnapshot":
        return cls(
            id=product.id,
            name=product.name,
            price=Decimal(product.price),
            quantity=product.quantity,
            seller_id=product.seller_id,
            image=product.image,
        )


class CatalogReader:
    """Reads product snapshots through the caller's session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_products(
        self, product_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, ProductSnapshot]:
        """
        Read current catalog values for the given products.

        Unknown identifiers are simply absent from the result.

        Args:
            product_ids: Product identifiers, duplicates allowed

        Returns:
            Mapping of product id to snapshot
        """
        ids = set(product_ids)
        if not ids:
            return {}

        try:
            result = await self.session.execute(
                select(Product)
                .where(Product.id.in_(ids))
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as e:
            logger.error(
                "Catalog read failed",
                product_count=len(ids),
                error=str(e),
            )
            raise

        snapshots = {
            product.id: ProductSnapshot.from_model(product)
            for product in result.scalars().all()
        }

        logger.debug(
            "Catalog snapshot read",
            requested=len(ids),
            found=len(snapshots),
        )
        return snapshots

    async def require_products(
        self, product_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, ProductSnapshot]:
        """
        Read snapshots for products that must all exist.

        Raises:
            ProductNotFoundError: If any identifier is unknown
        """
        ids = set(product_ids)
        snapshots = await self.get_products(ids)
        missing = ids - snapshots.keys()
        if missing:
            logger.warning("Products not found", product_ids=[str(pid) for pid in missing])
            raise ProductNotFoundError(missing)
        return snapshots
