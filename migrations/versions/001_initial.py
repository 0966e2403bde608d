"""
Alembic migration: users, products, orders, order items and status history.

Creates the marketplace order schema: the minimal user mirror used for
authorization and notifications, catalog products with a non-negative stock
counter, orders with payment and refund tracking, snapshotted order items,
and the append-only order status history.

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUSES = ("pending", "confirmed", "paid", "shipped", "delivered", "cancelled")
PAYMENT_METHODS = ("cash_on_delivery", "ecocash", "bank_transfer", "paynow")
PAYMENT_SOURCES = ("gateway_callback", "gateway_poll", "manual", "status_update")
TRANSITION_SOURCES = (
    "intake",
    "gateway_callback",
    "gateway_poll",
    "manual",
    "status_update",
    "buyer_cancel",
    "payment_method_switch",
    "refund",
)
USER_ROLES = ("buyer", "seller", "admin")

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    """Create the order lifecycle schema."""
    order_status = sa.Enum(*ORDER_STATUSES, name="order_status", create_constraint=True)
    payment_method = sa.Enum(*PAYMENT_METHODS, name="payment_method", create_constraint=True)
    payment_source = sa.Enum(*PAYMENT_SOURCES, name="payment_source", create_constraint=True)
    transition_source = sa.Enum(
        *TRANSITION_SOURCES, name="transition_source", create_constraint=True
    )
    user_role = sa.Enum(*USER_ROLES, name="user_role", create_constraint=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("role", user_role, nullable=False, server_default="buyer"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "products",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "seller_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("image", sa.String(1024), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("quantity >= 0", name="ck_products_quantity_non_negative"),
        sa.CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
    )
    op.create_index("ix_products_seller", "products", ["seller_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("order_number", sa.String(50), nullable=False, unique=True),
        sa.Column(
            "buyer_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("status", order_status, nullable=False),
        sa.Column("payment_method", payment_method, nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("shipping_full_name", sa.String(255), nullable=False),
        sa.Column("shipping_address", sa.String(500), nullable=False),
        sa.Column("shipping_city", sa.String(120), nullable=False),
        sa.Column("shipping_phone", sa.String(32), nullable=False),
        sa.Column("payment_reference", sa.String(100), nullable=True, unique=True),
        sa.Column("payment_result_id", sa.String(255), nullable=True),
        sa.Column("payment_status_text", sa.String(255), nullable=True),
        sa.Column("payment_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_poll_url", sa.String(1024), nullable=True),
        sa.Column("payment_redirect_url", sa.String(1024), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_source", payment_source, nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tracking_number", sa.String(120), nullable=True),
        sa.Column("refund_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("refund_reason", sa.String(500), nullable=True),
        sa.Column(
            "refund_processed_by",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("total_price >= 0", name="ck_orders_total_price_non_negative"),
        sa.CheckConstraint(
            "refund_amount IS NULL OR (refund_amount >= 0 AND refund_amount <= total_price)",
            name="ck_orders_refund_within_total",
        ),
    )
    op.create_index("ix_orders_buyer_created", "orders", ["buyer_id", "created_at"])
    op.create_index("ix_orders_status_created", "orders", ["status", "created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "order_id",
            sa.Uuid(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "product_id",
            sa.Uuid(),
            sa.ForeignKey("products.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "seller_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("image", sa.String(1024), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        sa.CheckConstraint("price >= 0", name="ck_order_items_price_non_negative"),
    )
    op.create_index("ix_order_items_order", "order_items", ["order_id"])
    op.create_index("ix_order_items_seller", "order_items", ["seller_id"])
    op.create_index("ix_order_items_product", "order_items", ["product_id"])

    op.create_table(
        "order_status_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "order_id",
            sa.Uuid(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_status", order_status, nullable=True),
        sa.Column("to_status", order_status, nullable=False),
        sa.Column(
            "changed_by",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("source", transition_source, nullable=False),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("metadata", JSONType, nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_order_status_history_order_created",
        "order_status_history",
        ["order_id", "created_at"],
    )


def downgrade() -> None:
    """Drop the order lifecycle schema."""
    op.drop_index("ix_order_status_history_order_created", table_name="order_status_history")
    op.drop_table("order_status_history")

    op.drop_index("ix_order_items_product", table_name="order_items")
    op.drop_index("ix_order_items_seller", table_name="order_items")
    op.drop_index("ix_order_items_order", table_name="order_items")
    op.drop_table("order_items")

    op.drop_index("ix_orders_status_created", table_name="orders")
    op.drop_index("ix_orders_buyer_created", table_name="orders")
    op.drop_table("orders")

    op.drop_index("ix_products_seller", table_name="products")
    op.drop_table("products")

    op.drop_index("ix_users_role", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for name in (
        "transition_source",
        "payment_source",
        "payment_method",
        "order_status",
        "user_role",
    ):
        sa.Enum(name=name).drop(bind, checkfirst=True)
