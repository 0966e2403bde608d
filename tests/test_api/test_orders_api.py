"""
HTTP tests for the order API.

The application runs in-process over ``httpx.ASGITransport``. Database
sessions, settings, the gateway and the dispatcher are swapped in through
FastAPI dependency overrides; bearer tokens are signed with the test secret.
"""

from decimal import Decimal
from typing import Any, AsyncGenerator, Callable

import httpx
import pytest
from jose import jwt

from marketplace.api.deps import get_app_settings, get_dispatcher, get_gateway
from marketplace.database.connection import get_db
from marketplace.main import create_app
from marketplace.services.orders.enums import OrderStatus
from marketplace.services.payments.gateway import GatewayStatus


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def app(settings, session_factory, gateway, dispatcher):
    """Application wired to the test database and mocked collaborators."""
    application = create_app()

    async def override_get_db() -> AsyncGenerator[Any, None]:
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_app_settings] = lambda: settings
    application.dependency_overrides[get_gateway] = lambda: gateway
    application.dependency_overrides[get_dispatcher] = lambda: dispatcher
    return application


@pytest.fixture
async def client(app, settings) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url=f"http://test{settings.api_v1_prefix}"
    ) as ac:
        yield ac


@pytest.fixture
def auth(settings) -> Callable[..., dict[str, str]]:
    """Bearer header for a user, as issued by the auth service."""

    def _headers(user) -> dict[str, str]:
        token = jwt.encode({"sub": str(user.id)}, settings.secret_key, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _headers


def order_payload(lines, method: str = "cash_on_delivery") -> dict[str, Any]:
    return {
        "shipping": {
            "full_name": "Tendai Buyer",
            "address": "12 Samora Machel Ave",
            "city": "Harare",
            "phone": "+263771000001",
        },
        "items": [{"product_id": str(p.id), "quantity": q} for p, q in lines],
        "payment_method": method,
    }


# ============================================================================
# Creation and reads
# ============================================================================


class TestCreateOrderEndpoint:
    async def test_cash_on_delivery_order(self, client, auth, market, stock_of):
        response = await client.post(
            "/orders/",
            json=order_payload([(market.p1, 2), (market.p2, 1)]),
            headers=auth(market.buyer),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["order"]["status"] == "confirmed"
        assert Decimal(body["order"]["total_price"]) == Decimal("45.50")
        assert len(body["order"]["items"]) == 2
        assert body["payment"]["kind"] == "cash_on_delivery"
        assert await stock_of(market.p1) == 3

    async def test_gateway_order_returns_redirect(self, client, auth, market, stock_of):
        response = await client.post(
            "/orders/",
            json=order_payload([(market.p2, 1)], method="paynow"),
            headers=auth(market.buyer),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["order"]["status"] == "pending"
        assert body["payment"]["redirect_url"] == "https://paynow.test/payment/abc123"
        assert await stock_of(market.p2) == 3

    async def test_requires_token(self, client, market):
        response = await client.post("/orders/", json=order_payload([(market.p1, 1)]))

        assert response.status_code == 401

    async def test_rejects_forged_token(self, client, market):
        token = jwt.encode({"sub": str(market.buyer.id)}, "x" * 40, algorithm="HS256")

        response = await client.get("/orders/mine", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    async def test_insufficient_stock_is_a_conflict(self, client, auth, market):
        response = await client.post(
            "/orders/", json=order_payload([(market.p2, 4)]), headers=auth(market.buyer)
        )

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "INSUFFICIENT_STOCK"
        assert detail["context"]["product_id"] == str(market.p2.id)
        assert detail["context"]["available"] == 3

    async def test_unknown_payment_method(self, client, auth, market):
        response = await client.post(
            "/orders/",
            json=order_payload([(market.p1, 1)], method="cheque"),
            headers=auth(market.buyer),
        )

        assert response.status_code == 400
        assert "ecocash" in response.json()["detail"]["context"]["supported"]

    async def test_zero_quantity_fails_validation(self, client, auth, market):
        response = await client.post(
            "/orders/", json=order_payload([(market.p1, 0)]), headers=auth(market.buyer)
        )

        assert response.status_code == 422
        assert response.json()["error"] == "Validation Error"


class TestReadEndpoints:
    async def test_buyer_sees_own_orders(self, client, auth, market, place_order):
        placed = await place_order([(market.p1, 1)])

        response = await client.get("/orders/mine", headers=auth(market.buyer))

        assert response.status_code == 200
        assert [o["id"] for o in response.json()] == [str(placed.order.id)]

    async def test_other_buyer_is_forbidden(self, client, auth, market, place_order):
        placed = await place_order([(market.p1, 1)])

        response = await client.get(
            f"/orders/{placed.order.id}", headers=auth(market.other_buyer)
        )

        assert response.status_code == 403

    async def test_missing_order(self, client, auth, market):
        response = await client.get(
            "/orders/00000000-0000-0000-0000-000000000000", headers=auth(market.admin)
        )

        assert response.status_code == 404


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycleEndpoints:
    async def test_seller_ships_order(self, client, auth, market, place_order):
        placed = await place_order([(market.p1, 1)])

        response = await client.put(
            f"/orders/{placed.order.id}/status",
            json={"status": "Shipped", "tracking_number": "TRK-1"},
            headers=auth(market.seller_a),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "shipped"
        assert response.json()["tracking_number"] == "TRK-1"

    async def test_buyer_cannot_update_status(self, client, auth, market, place_order):
        placed = await place_order([(market.p1, 1)])

        response = await client.put(
            f"/orders/{placed.order.id}/status",
            json={"status": "shipped"},
            headers=auth(market.buyer),
        )

        assert response.status_code == 403

    async def test_seller_without_items_is_forbidden(self, client, auth, market, place_order):
        placed = await place_order([(market.p1, 1)])

        response = await client.put(
            f"/orders/{placed.order.id}/status",
            json={"status": "shipped"},
            headers=auth(market.seller_b),
        )

        assert response.status_code == 403

    async def test_invalid_transition_lists_allowed(self, client, auth, market, place_order):
        placed = await place_order([(market.p1, 1)])

        response = await client.put(
            f"/orders/{placed.order.id}/status",
            json={"status": "delivered"},
            headers=auth(market.admin),
        )

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["current_status"] == "confirmed"
        assert detail["target_status"] == "delivered"
        assert "shipped" in detail["context"]["allowed_transitions"]

    async def test_buyer_cancels_and_stock_returns(
        self, client, auth, market, place_order, stock_of
    ):
        placed = await place_order([(market.p1, 2)])

        response = await client.post(
            f"/orders/{placed.order.id}/cancel",
            json={"reason": "Changed my mind"},
            headers=auth(market.buyer),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert await stock_of(market.p1) == 5

    async def test_switch_payment_method(self, client, auth, market, place_order):
        placed = await place_order([(market.p2, 1)], method="ecocash")

        response = await client.put(
            f"/orders/{placed.order.id}/payment-method",
            json={"payment_method": "bank_transfer"},
            headers=auth(market.buyer),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["order"]["payment_method"] == "bank_transfer"
        assert body["payment"]["kind"] == "manual_transfer"

    async def test_manual_payment_confirmation(self, client, auth, market, place_order, stock_of):
        placed = await place_order([(market.p2, 2)], method="ecocash")

        response = await client.post(
            f"/orders/{placed.order.id}/confirm-payment", headers=auth(market.seller_b)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "applied"
        assert body["order"]["status"] == "paid"
        assert await stock_of(market.p2) == 1

    async def test_verify_payment_polls_gateway(
        self, client, auth, market, place_order, gateway
    ):
        placed = await place_order([(market.p2, 1)], method="paynow")
        gateway.poll.return_value = GatewayStatus(
            reference=placed.order.payment_reference, status="Sent"
        )

        response = await client.post(
            f"/orders/{placed.order.id}/verify-payment", headers=auth(market.admin)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["gateway_status"] == "Sent"
        assert body["order"]["status"] == "pending"


# ============================================================================
# Gateway callback
# ============================================================================


class TestCallbackEndpoint:
    async def test_paid_callback_marks_order_paid(
        self, client, market, place_order, signed_callback, reload_order
    ):
        placed = await place_order([(market.p2, 1)], method="paynow")

        response = await client.post(
            "/orders/paynow/callback",
            data=signed_callback(
                reference=placed.order.payment_reference,
                paynowreference="PN-1",
                status="Paid",
            ),
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"
        order = await reload_order(placed.order.id)
        assert order.status == OrderStatus.PAID

    async def test_bad_hash_is_rejected(self, client, market, place_order, reload_order):
        placed = await place_order([(market.p2, 1)], method="paynow")

        response = await client.post(
            "/orders/paynow/callback",
            data={
                "reference": placed.order.payment_reference,
                "status": "Paid",
                "hash": "0" * 128,
            },
        )

        assert response.status_code == 400
        order = await reload_order(placed.order.id)
        assert order.status == OrderStatus.PENDING

    async def test_callback_without_gateway_credentials_is_refused(
        self, client, market, place_order, signed_callback, gateway, reload_order
    ):
        placed = await place_order([(market.p2, 1)], method="paynow")
        gateway.integration_key = None

        response = await client.post(
            "/orders/paynow/callback",
            data=signed_callback(
                reference=placed.order.payment_reference,
                paynowreference="PN-2",
                status="Paid",
            ),
        )

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "GATEWAY_NOT_CONFIGURED"
        order = await reload_order(placed.order.id)
        assert order.status == OrderStatus.PENDING

    async def test_unknown_reference_is_acknowledged(self, client, market, signed_callback):
        response = await client.post(
            "/orders/paynow/callback",
            data=signed_callback(reference="ORD-00000000-NOPE00", status="Paid"),
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "not_found"


# ============================================================================
# Seller settlement and refunds
# ============================================================================


class TestSellerAndAdminEndpoints:
    async def test_seller_earnings(self, client, auth, market, place_order, order_service):
        placed = await place_order([(market.p1, 1), (market.p2, 1)], method="ecocash")
        await order_service.confirm_payment(placed.order.id, market.admin)

        response = await client.get("/orders/seller/earnings", headers=auth(market.seller_a))

        assert response.status_code == 200
        body = response.json()
        assert Decimal(body["total_earnings"]) == Decimal("10.00")
        assert body["total_orders"] == 1

    async def test_buyer_cannot_see_earnings(self, client, auth, market):
        response = await client.get("/orders/seller/earnings", headers=auth(market.buyer))

        assert response.status_code == 403

    async def test_seller_orders_show_only_own_items(self, client, auth, market, place_order):
        await place_order([(market.p1, 1), (market.p2, 2)])

        response = await client.get(
            "/orders/seller/orders",
            params={"status": "confirmed"},
            headers=auth(market.seller_b),
        )

        assert response.status_code == 200
        (view,) = response.json()
        assert [item["product_id"] for item in view["items"]] == [str(market.p2.id)]
        assert Decimal(view["seller_total"]) == Decimal("51.00")

    async def test_admin_refund(self, client, auth, market, place_order, order_service):
        placed = await place_order([(market.p1, 1)], method="ecocash")
        await order_service.confirm_payment(placed.order.id, market.admin)

        response = await client.put(
            f"/orders/{placed.order.id}/refund",
            json={"reason": "Damaged in transit"},
            headers=auth(market.admin),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "refunded"
        assert Decimal(body["refund"]["amount"]) == Decimal("10.00")

    async def test_refund_of_unpaid_order_rejected(self, client, auth, market, place_order):
        placed = await place_order([(market.p1, 1)], method="ecocash")

        response = await client.put(
            f"/orders/{placed.order.id}/refund",
            json={"reason": "Nope"},
            headers=auth(market.admin),
        )

        assert response.status_code == 400
