"""Seed helpers shared by the service and endpoint tests."""

from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.models.loyalty import LoyaltySetting, LoyaltyTier, RedemptionRule
from clubdk_api.services.loyalty import LoyaltyService


async def create_customer(session: AsyncSession, email: str, **kwargs):
    return await LoyaltyService(session).create_customer(email=email, **kwargs)


async def seed_tiers(session: AsyncSession) -> list[LoyaltyTier]:
    tiers = [
        LoyaltyTier(name="Bronze", min_spend=Decimal("0"), max_spend=Decimal("500"), points_multiplier=1.0),
        LoyaltyTier(name="Prata", min_spend=Decimal("500"), max_spend=Decimal("1500"), points_multiplier=1.5),
        LoyaltyTier(name="Ouro", min_spend=Decimal("1500"), max_spend=None, points_multiplier=2.0),
    ]
    session.add_all(tiers)
    await session.commit()
    return tiers


async def seed_settings(session: AsyncSession, **values: str) -> None:
    session.add_all([LoyaltySetting(key=key, value=value) for key, value in values.items()])
    await session.commit()


async def seed_rule(
    session: AsyncSession,
    *,
    name: str = "Cupom R$10",
    points_cost: int = 100,
    discount_value: str = "10",
    minimum_order_value: str = "0",
    stock_quantity: int | None = None,
    is_active: bool = True,
) -> RedemptionRule:
    rule = RedemptionRule(
        name=name,
        points_cost=points_cost,
        discount_value=Decimal(discount_value),
        minimum_order_value=Decimal(minimum_order_value),
        stock_quantity=stock_quantity,
        is_active=is_active,
    )
    session.add(rule)
    await session.commit()
    return rule
