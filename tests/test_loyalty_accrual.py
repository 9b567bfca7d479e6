from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from clubdk_api.models.customer_profile import CustomerProfile
from clubdk_api.models.loyalty import LoyaltyEntryReason, LoyaltyLedgerEntry
from clubdk_api.models.order import Order, PaymentStatusEnum
from clubdk_api.services.loyalty.accrual import AccrualEngine, _shift_months
from clubdk_api.services.loyalty.config import BonusConfiguration
from clubdk_api.services.orders import OrderLine, OrderStateMachine
from factories import create_customer, seed_settings, seed_tiers


async def _paid_order(session, customer_id, amount: str) -> Order:
    machine = OrderStateMachine(session)
    order = await machine.create_order(
        customer_id=customer_id,
        items=[OrderLine(product_name="Camiseta", unit_price=Decimal(amount))],
    )
    await machine.confirm_payment(order.id)
    return order


async def _entries_for(session, order_id) -> list[LoyaltyLedgerEntry]:
    result = await session.execute(
        select(LoyaltyLedgerEntry)
        .where(LoyaltyLedgerEntry.order_id == order_id)
        .order_by(LoyaltyLedgerEntry.created_at)
    )
    return list(result.scalars())


def test_compute_components_floors_base_points() -> None:
    components = AccrualEngine.compute_components(
        Decimal("99.99"),
        multiplier=1.5,
        monthly_ordinal=1,
        config=BonusConfiguration(),
    )

    assert [(item.reason, item.points) for item in components] == [(LoyaltyEntryReason.BASE, 149)]


def test_compute_components_adds_bonus_entries() -> None:
    config = BonusConfiguration(ticket_threshold=Decimal("300"), ticket_bonus=40, recurrence_2nd=10)

    components = AccrualEngine.compute_components(
        Decimal("300"),
        multiplier=1.0,
        monthly_ordinal=2,
        config=config,
        order_label="DK260101-ABC123",
    )

    assert [(item.reason, item.points) for item in components] == [
        (LoyaltyEntryReason.BASE, 300),
        (LoyaltyEntryReason.HIGH_TICKET, 40),
        (LoyaltyEntryReason.RECURRENCE, 10),
    ]
    assert components[2].description == "Bônus recorrência (2ª compra do mês) DK260101-ABC123"


def test_compute_components_for_zero_net_value_is_empty() -> None:
    assert AccrualEngine.compute_components(
        Decimal("0"), multiplier=2.0, monthly_ordinal=1, config=BonusConfiguration()
    ) == []


def test_shift_months_clamps_to_month_end() -> None:
    value = datetime(2026, 8, 31, 10, 0, tzinfo=timezone.utc)

    assert _shift_months(value, -6) == datetime(2026, 2, 28, 10, 0, tzinfo=timezone.utc)
    assert _shift_months(value, 6) == datetime(2027, 2, 28, 10, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_first_purchase_accrues_single_base_entry(session_factory) -> None:
    async with session_factory() as session:
        await seed_tiers(session)
        await seed_settings(session, loyalty_ticket_threshold="500", loyalty_ticket_bonus="50")
        customer = await create_customer(session, "scenario-a@example.com")

        order = await _paid_order(session, customer.id, "100")

        entries = await _entries_for(session, order.id)
        assert [(entry.reason, entry.points) for entry in entries] == [(LoyaltyEntryReason.BASE, 100)]
        profile = await session.get(CustomerProfile, customer.id, populate_existing=True)
        assert profile.points_balance == 100
        assert profile.spend_last_6_months == Decimal("100.00")


@pytest.mark.asyncio
async def test_tier_multiplier_uses_spend_before_the_order(session_factory) -> None:
    async with session_factory() as session:
        tiers = await seed_tiers(session)
        customer = await create_customer(session, "tiered@example.com")

        await _paid_order(session, customer.id, "600")
        second = await _paid_order(session, customer.id, "100")

        entries = await _entries_for(session, second.id)
        base = next(entry for entry in entries if entry.reason == LoyaltyEntryReason.BASE)
        assert base.points == 150
        assert base.metadata_json["tier"] == "Prata"
        profile = await session.get(CustomerProfile, customer.id, populate_existing=True)
        assert profile.tier_id == tiers[1].id
        assert profile.points_balance == 600 + 150


@pytest.mark.asyncio
async def test_high_ticket_and_recurrence_bonuses_are_separate_entries(session_factory) -> None:
    async with session_factory() as session:
        await seed_settings(
            session,
            loyalty_ticket_threshold="200",
            loyalty_ticket_bonus="25",
            loyalty_recurrence_2nd="10",
            loyalty_recurrence_3rd="20",
            loyalty_recurrence_4th="30",
        )
        customer = await create_customer(session, "frequent@example.com")

        orders = [await _paid_order(session, customer.id, amount) for amount in ("50", "50", "250", "50", "50")]

        recurrence = []
        for order in orders:
            entries = await _entries_for(session, order.id)
            recurrence.append(sum(e.points for e in entries if e.reason == LoyaltyEntryReason.RECURRENCE))
        assert recurrence == [0, 10, 20, 30, 30]

        high_ticket = await _entries_for(session, orders[2].id)
        assert [e.points for e in high_ticket if e.reason == LoyaltyEntryReason.HIGH_TICKET] == [25]


@pytest.mark.asyncio
async def test_trailing_spend_ignores_orders_outside_window(session_factory) -> None:
    async with session_factory() as session:
        customer = await create_customer(session, "window@example.com")
        old = await _paid_order(session, customer.id, "400")
        recent = await _paid_order(session, customer.id, "100")
        old_row = await session.get(Order, old.id)
        old_row.paid_at = datetime.now(timezone.utc) - timedelta(days=400)
        await session.commit()

        engine = AccrualEngine(session)
        spend = await engine.trailing_spend(customer.id, as_of=datetime.now(timezone.utc))
        assert spend == Decimal("100.00")

        excluded = await engine.trailing_spend(
            customer.id, as_of=datetime.now(timezone.utc), exclude_order_id=recent.id
        )
        assert excluded == Decimal("0.00")


@pytest.mark.asyncio
async def test_unpaid_orders_do_not_count_towards_spend(session_factory) -> None:
    async with session_factory() as session:
        customer = await create_customer(session, "pending@example.com")
        machine = OrderStateMachine(session)
        await machine.create_order(
            customer_id=customer.id,
            items=[OrderLine(product_name="Boné", unit_price=Decimal("80"))],
        )
        paid = await _paid_order(session, customer.id, "20")

        spend = await AccrualEngine(session).trailing_spend(customer.id, as_of=datetime.now(timezone.utc))

        assert spend == Decimal("20.00")
        assert paid.status == PaymentStatusEnum.PAID
