"""
User model.

A minimal mirror of the account record owned by the authentication service.
Orders need the buyer's and sellers' contact details for notifications and
the role for seller/admin authorization; nothing here manages credentials.
"""

from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, Enum as SQLEnum, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.database.base import BaseModel
from marketplace.services.orders.enums import UserRole

if TYPE_CHECKING:
    from marketplace.database.models.order import Order
    from marketplace.database.models.product import Product


class User(BaseModel):
    """
    Marketplace account as seen by the order service.

    Attributes:
        email: Address notifications are sent to
        full_name: Display name used in emails
        phone: Optional mobile number for SMS alerts
        role: Buyer, seller or administrator
        is_active: Inactive accounts cannot place or manage orders
    """

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Account email address",
    )

    full_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Display name",
    )

    phone: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        comment="Mobile number in international format",
    )

    role: Mapped[UserRole] = mapped_column(
        SQLEnum(
            UserRole,
            name="user_role",
            create_constraint=True,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=UserRole.BUYER,
        comment="Account role",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the account may act",
    )

    products: Mapped[list["Product"]] = relationship(
        "Product",
        back_populates="seller",
        lazy="noload",
    )

    orders: Mapped[list["Order"]] = relationship(
        "Order",
        back_populates="buyer",
        foreign_keys="Order.buyer_id",
        lazy="noload",
    )

    __table_args__ = (
        Index("ix_users_role", "role"),
        {"comment": "Accounts mirrored from the authentication service"},
    )

    @property
    def is_seller(self) -> bool:
        return self.role == UserRole.SELLER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
