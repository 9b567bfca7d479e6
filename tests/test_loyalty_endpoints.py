from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


TIERS = [
    {"name": "Bronze", "minSpend": "0", "maxSpend": "500", "pointsMultiplier": 1.0},
    {"name": "Prata", "minSpend": "500", "maxSpend": "1500", "pointsMultiplier": 1.5},
    {"name": "Ouro", "minSpend": "1500", "maxSpend": None, "pointsMultiplier": 2.0},
]


@pytest.mark.asyncio
async def test_customer_registration_with_referral(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        referrer = (await client.post("/api/v1/loyalty/customers", json={"email": "referrer@example.com"})).json()
        response = await client.post(
            "/api/v1/loyalty/customers",
            json={"email": " Friend@Example.com ", "firstName": "Bia", "referralCode": referrer["referralCode"]},
        )
        duplicate = await client.post("/api/v1/loyalty/customers", json={"email": "friend@example.com"})
        bad_code = await client.post(
            "/api/v1/loyalty/customers",
            json={"email": "stranger@example.com", "referralCode": "NOPE0000"},
        )

    assert response.status_code == 201
    body = response.json()
    assert body["email"] == "friend@example.com"
    assert body["referredBy"] == referrer["customerId"]
    assert body["pointsBalance"] == 0
    assert body["tier"] is None
    assert body["pointsMultiplier"] == 1.0
    assert duplicate.status_code == 422
    assert bad_code.status_code == 422


@pytest.mark.asyncio
async def test_tier_and_settings_administration(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        replaced = await client.put("/api/v1/loyalty/tiers", json=TIERS)
        listed = await client.get("/api/v1/loyalty/tiers")

        settings_response = await client.put(
            "/api/v1/loyalty/settings",
            json={"birthdayBonus": 75, "ticketThreshold": "300", "ticketBonus": 25},
        )
        empty_update = await client.put("/api/v1/loyalty/settings", json={})
        current = await client.get("/api/v1/loyalty/settings")

    assert replaced.status_code == 200
    assert [tier["name"] for tier in listed.json()] == ["Bronze", "Prata", "Ouro"]
    assert listed.json()[2]["maxSpend"] is None

    assert settings_response.status_code == 200
    assert empty_update.status_code == 422
    body = current.json()
    assert body["birthdayBonus"] == 75
    assert body["ticketThreshold"] == 300.0
    assert body["ticketBonus"] == 25


@pytest.mark.asyncio
async def test_birthday_adjustment_and_redemption_flow(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        await client.put("/api/v1/loyalty/settings", json={"birthdayBonus": 50})
        customer = (await client.post("/api/v1/loyalty/customers", json={"email": "flow@example.com"})).json()
        customer_id = customer["customerId"]

        birthday = await client.post(
            f"/api/v1/loyalty/customers/{customer_id}/birth-date", json={"dateOfBirth": "1995-04-12"}
        )
        assert birthday.status_code == 200, birthday.text
        assert birthday.json()["bonusPoints"] == 50
        assert birthday.json()["pointsBalance"] == 50

        adjustment = await client.post(
            f"/api/v1/loyalty/customers/{customer_id}/adjustments",
            json={"points": 50, "reason": "Compensação de atraso", "actor": "operador@clubdk"},
        )
        assert adjustment.status_code == 201
        assert adjustment.json()["balanceAfter"] == 100
        assert adjustment.json()["operationType"] == "manual_adjustment"

        zero = await client.post(
            f"/api/v1/loyalty/customers/{customer_id}/adjustments", json={"points": 0, "reason": "Nada"}
        )
        assert zero.status_code == 422

        rule = await client.post(
            "/api/v1/loyalty/redemption-rules",
            json={"name": "Cupom R$10", "pointsCost": 100, "discountValue": "10", "minimumOrderValue": "50"},
        )
        assert rule.status_code == 201
        rule_id = rule.json()["id"]

        redemption = await client.post(
            f"/api/v1/loyalty/customers/{customer_id}/redemptions", json={"redemptionRuleId": rule_id}
        )
        assert redemption.status_code == 201, redemption.text
        receipt = redemption.json()
        assert receipt["pointsSpent"] == 100
        assert receipt["balanceAfter"] == 0
        assert receipt["discountValue"] == 10.0
        assert receipt["expiresAt"] is not None

        second = await client.post(
            f"/api/v1/loyalty/customers/{customer_id}/redemptions", json={"redemptionRuleId": rule_id}
        )
        assert second.status_code == 409
        assert second.json()["detail"]["code"] == "insufficient_points"

        snapshot = (await client.get(f"/api/v1/loyalty/customers/{customer_id}")).json()
        assert snapshot["availableCoupons"] == 1
        assert snapshot["birthdayBonusGranted"] is True

        ledger = await client.get(f"/api/v1/loyalty/customers/{customer_id}/ledger", params={"limit": 2})
        assert ledger.status_code == 200
        page = ledger.json()
        assert [entry["points"] for entry in page["entries"]] == [-100, 50]
        assert page["nextCursor"] is not None

        rest = await client.get(
            f"/api/v1/loyalty/customers/{customer_id}/ledger",
            params={"limit": 2, "cursor": page["nextCursor"]},
        )
        assert [entry["points"] for entry in rest.json()["entries"]] == [50]
        assert rest.json()["nextCursor"] is None

        redemptions_only = await client.get(
            "/api/v1/loyalty/history", params={"operationType": "redemption"}
        )
        assert [entry["operationType"] for entry in redemptions_only.json()["entries"]] == ["redemption"]


@pytest.mark.asyncio
async def test_reconciliation_endpoint_reports_consistent_state(app_with_db):
    app, _ = app_with_db

    async with _client(app) as client:
        customer = (await client.post("/api/v1/loyalty/customers", json={"email": "sync@example.com"})).json()
        await client.post(
            f"/api/v1/loyalty/customers/{customer['customerId']}/adjustments",
            json={"points": 30, "reason": "Boas-vindas"},
        )
        response = await client.get("/api/v1/loyalty/reconciliation")

    assert response.status_code == 200
    body = response.json()
    assert body["customers_checked"] == 1
    assert body["consistent"] is True
    assert body["balance_mismatches"] == []


@pytest.mark.asyncio
async def test_unknown_customer_and_bad_cursor(app_with_db):
    app, _ = app_with_db
    missing_id = "00000000-0000-0000-0000-000000000000"

    async with _client(app) as client:
        missing = await client.get(f"/api/v1/loyalty/customers/{missing_id}")
        bad_cursor = await client.get("/api/v1/loyalty/history", params={"cursor": "garbage"})

    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"
    assert bad_cursor.status_code == 422
