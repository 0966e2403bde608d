"""
ORM models.

Importing this package registers every mapped class on ``Base.metadata``.
"""

from marketplace.database.models.order import Order, OrderItem, OrderStatusHistory
from marketplace.database.models.product import Product
from marketplace.database.models.user import User

__all__ = [
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "Product",
    "User",
]
