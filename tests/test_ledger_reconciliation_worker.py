import pytest
from sqlalchemy import update

from clubdk_api.jobs.loyalty import run_ledger_reconciliation
from clubdk_api.models.customer_profile import CustomerProfile
from clubdk_api.observability.loyalty import get_loyalty_store
from clubdk_api.services.loyalty import LoyaltyService, RedemptionEngine
from clubdk_api.workers.ledger_reconciliation import LedgerReconciliationWorker
from factories import create_customer, seed_rule


@pytest.mark.asyncio
async def test_reconciliation_job_reports_clean_ledger(session_factory):
    async with session_factory() as session:
        customer = await create_customer(session, "clean@example.com")
        await LoyaltyService(session).adjust_points(customer.id, 20, reason="Boas-vindas")

    summary = await run_ledger_reconciliation(session_factory=session_factory)

    assert summary["customers_checked"] == 1
    assert summary["consistent"] is True
    assert summary["coupon_violations"] == []


@pytest.mark.asyncio
async def test_worker_run_once_flags_balance_drift(session_factory):
    async with session_factory() as session:
        customer = await create_customer(session, "broken@example.com")
        await LoyaltyService(session).adjust_points(customer.id, 100, reason="Saldo inicial")
        rule = await seed_rule(session)
        await RedemptionEngine(session).redeem(customer.id, rule.id)
        customer_id = customer.id

        await session.execute(
            update(CustomerProfile).where(CustomerProfile.id == customer_id).values(points_balance=7)
        )
        await session.commit()

    worker = LedgerReconciliationWorker(session_factory, interval_seconds=1)
    summary = await worker.run_once()

    assert worker.last_summary is summary
    assert summary["consistent"] is False
    assert summary["balance_mismatches"][0]["customer_id"] == str(customer_id)
    assert summary["balance_mismatches"][0]["drift"] == 7
    assert summary["coupon_violations"] == []

    consistency = get_loyalty_store().snapshot().consistency_errors
    assert consistency["kind:balance_drift"] == 1

    async with session_factory() as session:
        cached = await session.get(CustomerProfile, customer_id)
        assert cached.points_balance == 7
