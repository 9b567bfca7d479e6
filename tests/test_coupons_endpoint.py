from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _customer_with_coupon(client: AsyncClient, email: str) -> tuple[str, str]:
    customer = (
        await client.post("/api/v1/loyalty/customers", json={"email": email, "firstName": "Carla", "lastName": "Dias"})
    ).json()
    customer_id = customer["customerId"]
    await client.post(
        f"/api/v1/loyalty/customers/{customer_id}/adjustments",
        json={"points": 100, "reason": "Saldo inicial"},
    )
    rule = (
        await client.post(
            "/api/v1/loyalty/redemption-rules",
            json={"name": f"Cupom {email}", "pointsCost": 100, "discountValue": "10", "minimumOrderValue": "50"},
        )
    ).json()
    receipt = (
        await client.post(f"/api/v1/loyalty/customers/{customer_id}/redemptions", json={"redemptionRuleId": rule["id"]})
    ).json()
    return customer_id, receipt["userCouponId"]


@pytest.mark.asyncio
async def test_validate_coupon_for_checkout(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        customer_id, coupon_id = await _customer_with_coupon(client, "validate@example.com")

        ok = await client.post(
            f"/api/v1/coupons/customers/{customer_id}/validate",
            json={"userCouponId": coupon_id, "subtotal": "80"},
        )
        below = await client.post(
            f"/api/v1/coupons/customers/{customer_id}/validate",
            json={"userCouponId": coupon_id, "subtotal": "40"},
        )

    assert ok.status_code == 200, ok.text
    assert ok.json()["discountValue"] == 10.0
    assert ok.json()["minimumOrderValue"] == 50.0
    assert below.status_code == 422
    assert below.json()["detail"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_used_coupon_is_archived_and_listed_with_order(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        customer_id, coupon_id = await _customer_with_coupon(client, "archive@example.com")
        order = (
            await client.post(
                "/api/v1/orders/",
                json={
                    "customer_id": customer_id,
                    "items": [{"product_name": "Jaqueta", "unit_price": "80"}],
                    "user_coupon_id": coupon_id,
                },
            )
        ).json()
        assert order["coupon_discount"] == 10.0
        await client.post(f"/api/v1/orders/{order['id']}/confirm-payment")

        listed = (await client.get(f"/api/v1/coupons/customers/{customer_id}")).json()
        assert len(listed) == 1
        assert listed[0]["isUsed"] is True
        assert listed[0]["orderNumber"] == order["order_number"]
        assert listed[0]["customerName"] == "Carla Dias"

        deleted = await client.delete(f"/api/v1/coupons/{coupon_id}")
        assert deleted.status_code == 200
        assert deleted.json()["archived"] is True

        visible = (await client.get(f"/api/v1/coupons/customers/{customer_id}")).json()
        archived = (
            await client.get(f"/api/v1/coupons/customers/{customer_id}", params={"includeArchived": "true"})
        ).json()
        everything = (await client.get("/api/v1/coupons/")).json()

    assert visible == []
    assert archived[0]["archivedAt"] is not None
    assert [item["id"] for item in everything] == [coupon_id]


@pytest.mark.asyncio
async def test_delete_unused_coupon_removes_it(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        customer_id, coupon_id = await _customer_with_coupon(client, "remove@example.com")

        deleted = await client.delete(f"/api/v1/coupons/{coupon_id}")
        missing = await client.delete(f"/api/v1/coupons/{coupon_id}")
        listed = (await client.get(f"/api/v1/coupons/customers/{customer_id}")).json()

    assert deleted.json()["archived"] is False
    assert missing.status_code == 404
    assert listed == []
