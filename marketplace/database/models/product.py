"""
Product model.

Products are owned by the catalog service. This service reads price, name
and image when an order is placed and mutates ``quantity`` only through the
stock ledger's conditional updates.
"""

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.database.base import BaseModel

if TYPE_CHECKING:
    from marketplace.database.models.user import User


class Product(BaseModel):
    """
    Catalog product with its available stock.

    Attributes:
        name: Product name shown to buyers
        price: Current unit price
        quantity: Units available for sale, never negative
        seller_id: Seller who owns the listing
        image: Optional primary image URL
    """

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Product name",
    )

    price: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Current unit price",
    )

    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Units available for sale",
    )

    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        comment="Owning seller",
    )

    image: Mapped[Optional[str]] = mapped_column(
        String(1024),
        nullable=True,
        comment="Primary image URL",
    )

    seller: Mapped["User"] = relationship(
        "User",
        back_populates="products",
        lazy="noload",
    )

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_products_quantity_non_negative"),
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        Index("ix_products_seller", "seller_id"),
        {"comment": "Catalog products and their available stock"},
    )
