from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from clubdk_api.core.settings import settings


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _create_customer(client: AsyncClient, email: str, **extra) -> dict:
    response = await client.post("/api/v1/loyalty/customers", json={"email": email, **extra})
    assert response.status_code == 201, response.text
    return response.json()


async def _create_order(client: AsyncClient, customer_id: str, **extra) -> dict:
    payload = {
        "customer_id": customer_id,
        "items": [{"product_name": "Camiseta Club DK", "quantity": 2, "unit_price": "64.90"}],
        "shipping_cost": "20.00",
        **extra,
    }
    response = await client.post("/api/v1/orders/", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_checkout_then_confirm_awards_points(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        customer = await _create_customer(client, "Checkout@Example.com", firstName="Ana")
        order = await _create_order(client, customer["customerId"], payment_method="pix")

        assert order["status"] == "Pendente"
        assert order["delivery_status"] == "Pendente"
        assert order["subtotal"] == pytest.approx(129.80)
        assert order["total_price"] == pytest.approx(149.80)
        assert order["order_number"].startswith("DK")

        confirm = await client.post(f"/api/v1/orders/{order['id']}/confirm-payment", json={"actorType": "gateway"})
        assert confirm.status_code == 200, confirm.text
        body = confirm.json()
        assert body["alreadyConfirmed"] is False
        assert body["pointsAwarded"] == 129
        assert body["order"]["status"] == "Pago"
        assert body["order"]["paid_at"] is not None

        again = await client.post(f"/api/v1/orders/{order['id']}/confirm-payment")
        assert again.status_code == 200
        assert again.json()["alreadyConfirmed"] is True
        assert again.json()["pointsAwarded"] == 0

        profile = await client.get(f"/api/v1/loyalty/customers/{customer['customerId']}")
        assert profile.json()["pointsBalance"] == 129

        events = await client.get(f"/api/v1/orders/{order['id']}/state-events")
        assert events.status_code == 200
        axes = [(event["axis"], event["toStatus"]) for event in events.json()]
        assert ("payment", "Pago") in axes


@pytest.mark.asyncio
async def test_orders_require_api_key_when_configured(app_with_db):
    app, _ = app_with_db
    previous_key = settings.checkout_api_key

    try:
        async with _client(app) as client:
            customer = await _create_customer(client, "guarded@example.com")
            payload = {
                "customer_id": customer["customerId"],
                "items": [{"product_name": "Boné", "unit_price": "50"}],
            }
            settings.checkout_api_key = "test-key"
            denied = await client.post("/api/v1/orders/", json=payload)
            allowed = await client.post("/api/v1/orders/", json=payload, headers={"X-API-Key": "test-key"})
    finally:
        settings.checkout_api_key = previous_key

    assert denied.status_code == 401
    assert allowed.status_code == 201


@pytest.mark.asyncio
async def test_cancel_paid_order_conflicts_and_reversal_succeeds(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        customer = await _create_customer(client, "reverse@example.com")
        order = await _create_order(client, customer["customerId"])
        await client.post(f"/api/v1/orders/{order['id']}/confirm-payment")

        cancel = await client.post(f"/api/v1/orders/{order['id']}/cancel", json={"reason": "Desistência"})
        assert cancel.status_code == 409
        assert cancel.json()["detail"]["code"] == "invalid_transition"

        reversal = await client.post(f"/api/v1/orders/{order['id']}/reverse-payment", json={"reason": "Estorno"})
        assert reversal.status_code == 200, reversal.text
        body = reversal.json()
        assert body["pointsReversed"] == 129
        assert len(body["reversalEntryIds"]) == 1
        assert body["order"]["status"] == "Cancelado"
        assert body["order"]["cancellation_reason"] == "Estorno"

        profile = await client.get(f"/api/v1/loyalty/customers/{customer['customerId']}")
        assert profile.json()["pointsBalance"] == 0


@pytest.mark.asyncio
async def test_delivery_advances_forward_only(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        customer = await _create_customer(client, "delivery@example.com")
        order = await _create_order(client, customer["customerId"])

        unpaid = await client.post(f"/api/v1/orders/{order['id']}/delivery", json={"next_status": "Despachado"})
        assert unpaid.status_code == 409
        await client.post(f"/api/v1/orders/{order['id']}/confirm-payment")

        dispatched = await client.post(
            f"/api/v1/orders/{order['id']}/delivery",
            json={"next_status": "Despachado", "info": "BR123456789"},
        )
        assert dispatched.status_code == 200
        assert dispatched.json()["delivery_status"] == "Despachado"
        assert dispatched.json()["delivery_info"] == "BR123456789"

        delivered = await client.post(f"/api/v1/orders/{order['id']}/delivery", json={"next_status": "Entregue"})
        assert delivered.json()["delivery_status"] == "Entregue"

        backwards = await client.post(f"/api/v1/orders/{order['id']}/delivery", json={"next_status": "Despachado"})
        assert backwards.status_code == 409


@pytest.mark.asyncio
async def test_bulk_confirm_reports_per_order_outcomes(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        customer = await _create_customer(client, "bulk@example.com")
        first = await _create_order(client, customer["customerId"])
        second = await _create_order(client, customer["customerId"])
        cancelled = await _create_order(client, customer["customerId"])
        await client.post(f"/api/v1/orders/{cancelled['id']}/cancel")

        response = await client.post(
            "/api/v1/orders/bulk/confirm-payment",
            json={"order_ids": [first["id"], second["id"], cancelled["id"]]},
        )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["operation"] == "confirm_payment"
    assert body["succeeded"] == 2
    assert body["skipped"] == 1
    failures = [item for item in body["items"] if not item["succeeded"]]
    assert [item["orderId"] for item in failures] == [cancelled["id"]]
    assert failures[0]["errorCode"] == "invalid_transition"


@pytest.mark.asyncio
async def test_unknown_order_and_invalid_payload(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        missing = await client.get("/api/v1/orders/00000000-0000-0000-0000-000000000000")
        unknown_customer = await client.post(
            "/api/v1/orders/",
            json={
                "customer_id": "00000000-0000-0000-0000-000000000000",
                "items": [{"product_name": "Caneca", "unit_price": "30"}],
            },
        )
        empty_items = await client.post(
            "/api/v1/orders/",
            json={"customer_id": "00000000-0000-0000-0000-000000000000", "items": []},
        )

    assert missing.status_code == 404
    assert unknown_customer.status_code == 404
    assert empty_items.status_code == 422
