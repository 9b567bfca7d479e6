import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from clubdk_api.models.coupon import Coupon, UserCoupon
from clubdk_api.models.customer_profile import CustomerProfile
from clubdk_api.models.loyalty import LoyaltyLedgerEntry, LoyaltyOperationType, RedemptionRule
from clubdk_api.observability.loyalty import get_loyalty_store
from clubdk_api.services.exceptions import InsufficientPointsError, LedgerValidationError, NotFoundError
from clubdk_api.services.loyalty import LoyaltyService, RedemptionEngine, RedemptionReceipt
from factories import create_customer, seed_rule


async def _funded_customer(session, email: str, points: int):
    customer = await create_customer(session, email)
    await LoyaltyService(session).adjust_points(customer.id, points, reason="Saldo inicial")
    return customer


@pytest.mark.asyncio
async def test_redeem_exact_balance_then_second_attempt_fails(session_factory) -> None:
    async with session_factory() as session:
        customer = await _funded_customer(session, "scenario-b@example.com", 100)
        customer_id = customer.id
        rule = await seed_rule(session, points_cost=100)
        rule_id = rule.id
        issued_at = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

        receipt = await RedemptionEngine(session, expiry_days=30).redeem(customer_id, rule_id, now=issued_at)

        assert receipt.balance_after == 0
        assert receipt.ledger_entry.points == -100
        assert receipt.ledger_entry.operation_type == LoyaltyOperationType.REDEMPTION
        assert receipt.ledger_entry.description == "Resgate: Cupom R$10"
        assert not receipt.user_coupon.is_used
        assert receipt.user_coupon.expires_at == issued_at + timedelta(days=30)
        assert receipt.coupon.redemption_rule_id == rule_id
        receipt_coupon_id = receipt.user_coupon.id

        with pytest.raises(InsufficientPointsError):
            await RedemptionEngine(session).redeem(customer_id, rule_id)

        instances = (
            await session.execute(select(UserCoupon).where(UserCoupon.customer_id == customer_id))
        ).scalars().all()
        assert [instance.id for instance in instances] == [receipt_coupon_id]
        profile = await session.get(CustomerProfile, customer_id, populate_existing=True)
        assert profile.points_balance == 0
        snapshot = get_loyalty_store().snapshot()
        assert snapshot.redemptions["total"] == 1
        assert snapshot.rejections["insufficient_points"] == 1


@pytest.mark.asyncio
async def test_redemptions_reuse_the_rule_coupon_definition(session_factory) -> None:
    async with session_factory() as session:
        customer = await _funded_customer(session, "reuse@example.com", 300)
        rule = await seed_rule(session, points_cost=100)

        first = await RedemptionEngine(session).redeem(customer.id, rule.id)
        second = await RedemptionEngine(session).redeem(customer.id, rule.id)

        assert first.coupon.id == second.coupon.id
        assert first.user_coupon.id != second.user_coupon.id
        definitions = await session.scalar(select(func.count(Coupon.id)))
        assert definitions == 1


@pytest.mark.asyncio
async def test_inactive_or_missing_rule_is_rejected(session_factory) -> None:
    async with session_factory() as session:
        customer = await _funded_customer(session, "inactive@example.com", 500)
        customer_id = customer.id
        rule = await seed_rule(session, is_active=False)
        rule_id = rule.id

        with pytest.raises(LedgerValidationError):
            await RedemptionEngine(session).redeem(customer_id, rule_id)
        with pytest.raises(NotFoundError):
            await RedemptionEngine(session).redeem(customer_id, uuid4())

        debits = await session.scalar(
            select(func.count(LoyaltyLedgerEntry.id)).where(
                LoyaltyLedgerEntry.operation_type == LoyaltyOperationType.REDEMPTION
            )
        )
        assert debits == 0


@pytest.mark.asyncio
async def test_stock_is_claimed_per_redemption(session_factory) -> None:
    async with session_factory() as session:
        customer = await _funded_customer(session, "stock@example.com", 500)
        customer_id = customer.id
        rule = await seed_rule(session, points_cost=100, stock_quantity=1)
        rule_id = rule.id

        await RedemptionEngine(session).redeem(customer_id, rule_id)
        with pytest.raises(LedgerValidationError):
            await RedemptionEngine(session).redeem(customer_id, rule_id)

        remaining = await session.scalar(select(RedemptionRule.stock_quantity).where(RedemptionRule.id == rule_id))
        assert remaining == 0
        profile = await session.get(CustomerProfile, customer_id, populate_existing=True)
        assert profile.points_balance == 400


@pytest.mark.asyncio
async def test_stale_reader_cannot_double_spend(file_session_factory) -> None:
    async with file_session_factory() as setup:
        customer = await _funded_customer(setup, "race@example.com", 100)
        customer_id = customer.id
        rule = await seed_rule(setup, points_cost=100)
        rule_id = rule.id

    async with file_session_factory() as first, file_session_factory() as second:
        # Both sessions observe the funded balance before either redeems.
        assert (await first.get(CustomerProfile, customer_id)).points_balance == 100
        assert (await second.get(CustomerProfile, customer_id)).points_balance == 100
        await first.commit()
        await second.commit()

        await RedemptionEngine(first).redeem(customer_id, rule_id)
        with pytest.raises(InsufficientPointsError):
            await RedemptionEngine(second).redeem(customer_id, rule_id)

    async with file_session_factory() as check:
        profile = await check.get(CustomerProfile, customer_id)
        assert profile.points_balance == 0
        issued = await check.scalar(select(func.count(UserCoupon.id)).where(UserCoupon.customer_id == customer_id))
        assert issued == 1
        ledger_sum = await check.scalar(
            select(func.sum(LoyaltyLedgerEntry.points)).where(LoyaltyLedgerEntry.customer_id == customer_id)
        )
        assert ledger_sum == 0


@pytest.mark.asyncio
async def test_concurrent_redemptions_spend_balance_once(file_session_factory) -> None:
    async with file_session_factory() as setup:
        customer = await _funded_customer(setup, "concurrent@example.com", 100)
        customer_id = customer.id
        rule = await seed_rule(setup, points_cost=100)
        rule_id = rule.id

    async with file_session_factory() as first, file_session_factory() as second:
        results = await asyncio.gather(
            RedemptionEngine(first).redeem(customer_id, rule_id),
            RedemptionEngine(second).redeem(customer_id, rule_id),
            return_exceptions=True,
        )

    receipts = [result for result in results if isinstance(result, RedemptionReceipt)]
    rejections = [result for result in results if isinstance(result, InsufficientPointsError)]
    assert len(receipts) == 1
    assert len(rejections) == 1

    async with file_session_factory() as check:
        profile = await check.get(CustomerProfile, customer_id)
        assert profile.points_balance == 0
        issued = await check.scalar(select(func.count(UserCoupon.id)).where(UserCoupon.customer_id == customer_id))
        assert issued == 1
