"""
Pytest configuration and shared test fixtures.

Service tests run against a real async SQLAlchemy engine on a temporary
SQLite file so the conditional UPDATE statements that guard stock and status
are exercised for real. The payment gateway's network calls and the
notification dispatcher are replaced with mocks.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from marketplace.core.config import Settings
from marketplace.database.base import Base
from marketplace.database.connection import create_engine, create_session_factory
from marketplace.database.models import Order, Product, User
from marketplace.services.notifications.dispatcher import NotificationDispatcher
from marketplace.services.orders.enums import PaymentMethod, UserRole
from marketplace.services.orders.service import OrderService, PlacedOrder
from marketplace.services.payments.gateway import (
    GatewayInitiation,
    PaynowGateway,
    compute_hash,
)

INTEGRATION_KEY = "test-integration-key"


@dataclass
class Marketplace:
    """Seeded users and products shared by service tests."""

    buyer: User
    other_buyer: User
    seller_a: User
    seller_b: User
    admin: User
    p1: Product
    p2: Product
    p3: Product


# ============================================================================
# Settings and database
# ============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    """
    Test settings on a throwaway SQLite file with the gateway configured.

    Returns:
        Settings: Isolated settings instance
    """
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}",
        secret_key="test-secret-key-that-is-long-enough-for-hs256",
        paynow_integration_id="12345",
        paynow_integration_key=INTEGRATION_KEY,
        paynow_initiate_url="https://paynow.test/interface/initiatetransaction",
        notifications_enabled=True,
        sms_enabled=False,
        gateway_timeout_seconds=0.5,
        gateway_max_retries=0,
    )


@pytest.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create the schema on a fresh database and dispose it afterwards.

    Yields:
        AsyncEngine: Engine bound to the test database
    """
    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def market(session_factory: async_sessionmaker[AsyncSession]) -> Marketplace:
    """
    Seed two buyers, two sellers, an admin and three products.

    p1: seller A, 10.00, 5 in stock
    p2: seller B, 25.50, 3 in stock
    p3: seller A, 4.25, 10 in stock

    Returns:
        Marketplace: Seeded records (detached, attributes loaded)
    """
    async with session_factory() as session:
        buyer = User(email="buyer@example.com", full_name="Tendai Buyer", phone="+263771000001")
        other_buyer = User(email="other@example.com", full_name="Other Buyer")
        seller_a = User(
            email="seller.a@example.com",
            full_name="Seller A",
            phone="+263771000002",
            role=UserRole.SELLER,
        )
        seller_b = User(email="seller.b@example.com", full_name="Seller B", role=UserRole.SELLER)
        admin = User(email="admin@example.com", full_name="Admin", role=UserRole.ADMIN)
        session.add_all([buyer, other_buyer, seller_a, seller_b, admin])
        await session.flush()

        p1 = Product(name="Maize Meal 10kg", price=Decimal("10.00"), quantity=5, seller_id=seller_a.id)
        p2 = Product(name="Solar Lamp", price=Decimal("25.50"), quantity=3, seller_id=seller_b.id)
        p3 = Product(name="Cooking Oil 2L", price=Decimal("4.25"), quantity=10, seller_id=seller_a.id)
        session.add_all([p1, p2, p3])
        await session.commit()

        return Marketplace(
            buyer=buyer,
            other_buyer=other_buyer,
            seller_a=seller_a,
            seller_b=seller_b,
            admin=admin,
            p1=p1,
            p2=p2,
            p3=p3,
        )


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def dispatcher() -> MagicMock:
    """
    Notification dispatcher double that records scheduled notifications.

    Returns:
        MagicMock: Mock with the dispatcher's interface
    """
    return MagicMock(spec=NotificationDispatcher)


@pytest.fixture
def gateway(settings: Settings) -> PaynowGateway:
    """
    Real gateway with its network calls replaced.

    Callback parsing and hash checks run for real; ``initiate`` and ``poll``
    are AsyncMocks tests can reconfigure.

    Returns:
        PaynowGateway: Gateway instance
    """
    gw = PaynowGateway(settings)
    gw.initiate = AsyncMock(
        return_value=GatewayInitiation(
            redirect_url="https://paynow.test/payment/abc123",
            poll_url="https://paynow.test/interface/poll/abc123",
        )
    )
    gw.poll = AsyncMock()
    return gw


@pytest.fixture
def order_service(
    session: AsyncSession,
    settings: Settings,
    gateway: PaynowGateway,
    dispatcher: MagicMock,
) -> OrderService:
    return OrderService(session, settings=settings, gateway=gateway, dispatcher=dispatcher)


# ============================================================================
# Helpers
# ============================================================================


@pytest.fixture
def shipping() -> dict[str, str]:
    return {
        "full_name": "Tendai Buyer",
        "address": "12 Samora Machel Ave",
        "city": "Harare",
        "phone": "+263771000001",
    }


@pytest.fixture
def place_order(
    order_service: OrderService, market: Marketplace, shipping: dict[str, str]
) -> Callable[..., Any]:
    """
    Factory placing an order for the seeded buyer.

    Example:
        placed = await place_order([(market.p1, 2)], PaymentMethod.ECOCASH)
    """

    async def _place(
        lines: list[tuple[Product, int]],
        method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY,
        buyer: Optional[User] = None,
    ) -> PlacedOrder:
        return await order_service.create_order(
            buyer=buyer or market.buyer,
            shipping=shipping,
            cart_items=[{"product_id": p.id, "quantity": q} for p, q in lines],
            payment_method=method,
        )

    return _place


@pytest.fixture
def stock_of(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Read a product's quantity through a separate session."""

    async def _stock(product: Product) -> int:
        async with session_factory() as s:
            result = await s.execute(select(Product.quantity).where(Product.id == product.id))
            return result.scalar_one()

    return _stock


@pytest.fixture
def reload_order(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Read an order through a separate session."""

    async def _reload(order_id: uuid.UUID) -> Order:
        async with session_factory() as s:
            result = await s.execute(select(Order).where(Order.id == order_id))
            return result.scalar_one()

    return _reload


@pytest.fixture
def signed_callback() -> Callable[..., dict[str, str]]:
    """
    Build gateway callback form fields with a valid hash appended.

    Example:
        fields = signed_callback(reference="ORD-1", status="Paid")
    """

    def _sign(**fields: str) -> dict[str, str]:
        signed = dict(fields)
        signed["hash"] = compute_hash(signed, INTEGRATION_KEY)
        return signed

    return _sign
