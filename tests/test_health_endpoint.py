import pytest
from httpx import ASGITransport, AsyncClient

from clubdk_api.observability.loyalty import get_loyalty_store


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_healthz_reports_version(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.get("/healthz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["version"] == "0.1.0"


@pytest.mark.asyncio
async def test_readyz_degrades_after_consistency_errors(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        healthy = await client.get("/api/v1/readyz")
        get_loyalty_store().record_consistency_error("balance_drift")
        degraded = await client.get("/api/v1/readyz")

    assert healthy.json()["status"] == "ready"
    assert healthy.json()["components"]["database"]["status"] == "ready"
    assert degraded.json()["status"] == "degraded"
    assert degraded.json()["components"]["ledger"]["status"] == "degraded"


@pytest.mark.asyncio
async def test_observability_snapshot_and_prometheus(app_with_db) -> None:
    app, _ = app_with_db
    store = get_loyalty_store()
    store.record_accrual("base", 129)
    store.record_rejection("insufficient_points")
    store.record_bulk_outcome("cancel", succeeded=2, skipped=1)

    async with _client(app) as client:
        snapshot = await client.get("/api/v1/observability/loyalty")
        metrics = await client.get("/api/v1/observability/prometheus")

    body = snapshot.json()
    assert body["accruals"]["points"] == 129
    assert body["accruals"]["reason:base"] == 1
    assert body["rejections"] == {"insufficient_points": 1}
    assert body["bulk"]["cancel"] == {"runs": 1, "succeeded": 2, "skipped": 1}

    text = metrics.text
    assert "clubdk_loyalty_accrual_points_total 129" in text
    assert 'clubdk_loyalty_rejections_total{kind="insufficient_points"} 1' in text
    assert 'clubdk_order_bulk_items_total{operation="cancel",outcome="skipped"} 1' in text
