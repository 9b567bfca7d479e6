"""Bonus configuration snapshot and admin maintenance of tiers, rules and settings."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.core.settings import settings
from clubdk_api.models.coupon import Coupon
from clubdk_api.models.loyalty import LoyaltySetting, LoyaltyTier, RedemptionRule
from clubdk_api.services.exceptions import LedgerValidationError, NotFoundError
from clubdk_api.services.transactions import unit_of_work

BIRTHDAY_BONUS_KEY = "loyalty_birthday_bonus"
REFERRAL_BONUS_KEY = "loyalty_referral_bonus"
TICKET_THRESHOLD_KEY = "loyalty_ticket_threshold"
TICKET_BONUS_KEY = "loyalty_ticket_bonus"
RECURRENCE_2ND_KEY = "loyalty_recurrence_2nd"
RECURRENCE_3RD_KEY = "loyalty_recurrence_3rd"
RECURRENCE_4TH_KEY = "loyalty_recurrence_4th"

BONUS_SETTING_KEYS = (
    BIRTHDAY_BONUS_KEY,
    REFERRAL_BONUS_KEY,
    TICKET_THRESHOLD_KEY,
    TICKET_BONUS_KEY,
    RECURRENCE_2ND_KEY,
    RECURRENCE_3RD_KEY,
    RECURRENCE_4TH_KEY,
)


@dataclass(frozen=True, slots=True)
class BonusConfiguration:
    """Immutable snapshot of the bonus settings, loaded once per transaction."""

    birthday_bonus: int = 0
    referral_bonus: int = 0
    ticket_threshold: Decimal = Decimal("0")
    ticket_bonus: int = 0
    recurrence_2nd: int = 0
    recurrence_3rd: int = 0
    recurrence_4th: int = 0

    def recurrence_bonus_for(self, ordinal: int) -> int:
        """Bonus for the customer's ``ordinal``-th paid order of the month."""

        if ordinal <= 1:
            return 0
        if ordinal == 2:
            return self.recurrence_2nd
        if ordinal == 3:
            return self.recurrence_3rd
        return self.recurrence_4th

    def qualifies_for_ticket_bonus(self, net_value: Decimal) -> bool:
        return self.ticket_bonus > 0 and self.ticket_threshold > 0 and net_value >= self.ticket_threshold

    def as_settings(self) -> dict[str, str]:
        return {
            BIRTHDAY_BONUS_KEY: str(self.birthday_bonus),
            REFERRAL_BONUS_KEY: str(self.referral_bonus),
            TICKET_THRESHOLD_KEY: str(self.ticket_threshold),
            TICKET_BONUS_KEY: str(self.ticket_bonus),
            RECURRENCE_2ND_KEY: str(self.recurrence_2nd),
            RECURRENCE_3RD_KEY: str(self.recurrence_3rd),
            RECURRENCE_4TH_KEY: str(self.recurrence_4th),
        }


def _default_configuration() -> BonusConfiguration:
    recurrence = list(settings.loyalty_default_recurrence_bonuses) + [0, 0, 0]
    return BonusConfiguration(
        birthday_bonus=settings.loyalty_default_birthday_bonus,
        referral_bonus=settings.loyalty_default_referral_bonus,
        ticket_threshold=Decimal(str(settings.loyalty_default_ticket_threshold)),
        ticket_bonus=settings.loyalty_default_ticket_bonus,
        recurrence_2nd=recurrence[0],
        recurrence_3rd=recurrence[1],
        recurrence_4th=recurrence[2],
    )


def _parse_points(key: str, raw: Any) -> int:
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as exc:
        raise LedgerValidationError(f"Setting {key} must be numeric") from exc
    if value < 0 or value != value.to_integral_value():
        raise LedgerValidationError(f"Setting {key} must be a non-negative whole number of points")
    return int(value)


def _parse_amount(key: str, raw: Any) -> Decimal:
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as exc:
        raise LedgerValidationError(f"Setting {key} must be numeric") from exc
    if value < 0:
        raise LedgerValidationError(f"Setting {key} must be non-negative")
    return value


def build_bonus_configuration(values: Mapping[str, Any]) -> BonusConfiguration:
    """Overlay stored setting values on top of the configured defaults."""

    defaults = _default_configuration()

    def points(key: str, fallback: int) -> int:
        return _parse_points(key, values[key]) if key in values else fallback

    return BonusConfiguration(
        birthday_bonus=points(BIRTHDAY_BONUS_KEY, defaults.birthday_bonus),
        referral_bonus=points(REFERRAL_BONUS_KEY, defaults.referral_bonus),
        ticket_threshold=(
            _parse_amount(TICKET_THRESHOLD_KEY, values[TICKET_THRESHOLD_KEY])
            if TICKET_THRESHOLD_KEY in values
            else defaults.ticket_threshold
        ),
        ticket_bonus=points(TICKET_BONUS_KEY, defaults.ticket_bonus),
        recurrence_2nd=points(RECURRENCE_2ND_KEY, defaults.recurrence_2nd),
        recurrence_3rd=points(RECURRENCE_3RD_KEY, defaults.recurrence_3rd),
        recurrence_4th=points(RECURRENCE_4TH_KEY, defaults.recurrence_4th),
    )


async def load_bonus_configuration(session: AsyncSession) -> BonusConfiguration:
    result = await session.execute(
        select(LoyaltySetting.key, LoyaltySetting.value).where(LoyaltySetting.key.in_(BONUS_SETTING_KEYS))
    )
    return build_bonus_configuration({key: value for key, value in result.all()})


@dataclass(slots=True)
class TierInput:
    name: str
    min_spend: Decimal
    max_spend: Decimal | None
    points_multiplier: float


@dataclass(slots=True)
class RedemptionRuleInput:
    name: str
    points_cost: int
    discount_value: Decimal
    minimum_order_value: Decimal = Decimal("0")
    stock_quantity: int | None = None
    is_active: bool = True
    description: str | None = None


class LoyaltyConfigService:
    """Admin maintenance for tiers, redemption rules and bonus settings."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def list_tiers(self) -> list[LoyaltyTier]:
        result = await self._db.execute(select(LoyaltyTier).order_by(LoyaltyTier.min_spend.asc()))
        return list(result.scalars().all())

    async def replace_tiers(self, tiers: Sequence[TierInput]) -> list[LoyaltyTier]:
        """Replace the tier table with ``tiers``, updating rows that keep their name."""

        seen: set[str] = set()
        for tier in tiers:
            if tier.name in seen:
                raise LedgerValidationError(f"Duplicate tier name {tier.name}")
            seen.add(tier.name)
            if tier.min_spend < 0:
                raise LedgerValidationError("Tier min_spend must be non-negative")
            if tier.max_spend is not None and tier.max_spend <= tier.min_spend:
                raise LedgerValidationError(f"Tier {tier.name} max_spend must exceed min_spend")
            if tier.points_multiplier < 0:
                raise LedgerValidationError("Tier multiplier must be non-negative")

        async with unit_of_work(self._db):
            existing = {tier.name: tier for tier in await self.list_tiers()}
            for payload in tiers:
                row = existing.pop(payload.name, None)
                if row is None:
                    row = LoyaltyTier(name=payload.name)
                    self._db.add(row)
                row.min_spend = payload.min_spend
                row.max_spend = payload.max_spend
                row.points_multiplier = payload.points_multiplier
            for stale in existing.values():
                await self._db.delete(stale)
            await self._db.flush()

        logger.info("Replaced loyalty tiers", tiers=[tier.name for tier in tiers])
        return await self.list_tiers()

    async def list_redemption_rules(self, *, active_only: bool = False) -> list[RedemptionRule]:
        stmt = select(RedemptionRule).order_by(RedemptionRule.points_cost.asc(), RedemptionRule.name.asc())
        if active_only:
            stmt = stmt.where(RedemptionRule.is_active.is_(True))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def upsert_redemption_rule(
        self, payload: RedemptionRuleInput, *, rule_id: UUID | None = None
    ) -> RedemptionRule:
        """Create or edit a rule and keep its coupon definition in step.

        When the discount terms change, the previous definition is detached so
        coupons already issued keep the terms they were redeemed under.
        """

        if payload.points_cost <= 0:
            raise LedgerValidationError("Redemption rules must cost at least one point")
        if payload.discount_value <= 0:
            raise LedgerValidationError("Redemption rules require a positive discount")
        if payload.minimum_order_value < 0:
            raise LedgerValidationError("Minimum order value must be non-negative")
        if payload.stock_quantity is not None and payload.stock_quantity < 0:
            raise LedgerValidationError("Stock quantity must be non-negative")

        async with unit_of_work(self._db):
            if rule_id is None:
                rule = RedemptionRule()
                self._db.add(rule)
            else:
                rule = await self._db.get(RedemptionRule, rule_id)
                if rule is None:
                    raise NotFoundError("Redemption rule", rule_id)
            rule.name = payload.name
            rule.description = payload.description
            rule.points_cost = payload.points_cost
            rule.discount_value = payload.discount_value
            rule.minimum_order_value = payload.minimum_order_value
            rule.stock_quantity = payload.stock_quantity
            rule.is_active = payload.is_active
            await self._db.flush()

            definition = await self._db.scalar(select(Coupon).where(Coupon.redemption_rule_id == rule.id))
            if definition is not None and (
                Decimal(definition.discount_value) != Decimal(payload.discount_value)
                or Decimal(definition.minimum_order_value) != Decimal(payload.minimum_order_value)
            ):
                definition.redemption_rule_id = None
                definition.is_active = False
                await self._db.flush()
                definition = None
            if definition is None:
                self._db.add(coupon_definition_for_rule(rule))
            else:
                definition.name = rule.name
                definition.points_cost = rule.points_cost
                definition.is_active = rule.is_active
            await self._db.flush()

        logger.info(
            "Saved redemption rule",
            rule_id=str(rule.id),
            points_cost=rule.points_cost,
            is_active=rule.is_active,
        )
        return rule

    async def get_bonus_settings(self) -> BonusConfiguration:
        return await load_bonus_configuration(self._db)

    async def update_bonus_settings(self, updates: Mapping[str, Any]) -> BonusConfiguration:
        unknown = sorted(set(updates) - set(BONUS_SETTING_KEYS))
        if unknown:
            raise LedgerValidationError(f"Unknown loyalty settings: {', '.join(unknown)}")
        # Validate the merged result before anything is written.
        current = await load_bonus_configuration(self._db)
        merged = build_bonus_configuration({**current.as_settings(), **updates})

        async with unit_of_work(self._db):
            stored = {
                row.key: row
                for row in (
                    await self._db.execute(select(LoyaltySetting).where(LoyaltySetting.key.in_(list(updates))))
                ).scalars()
            }
            for key in updates:
                value = merged.as_settings()[key]
                row = stored.get(key)
                if row is None:
                    self._db.add(LoyaltySetting(key=key, value=value))
                else:
                    row.value = value

        logger.info("Updated loyalty bonus settings", keys=sorted(updates))
        return merged


def coupon_definition_for_rule(rule: RedemptionRule) -> Coupon:
    return Coupon(
        code=f"RESGATE-{uuid4().hex[:10].upper()}",
        name=rule.name,
        discount_value=rule.discount_value,
        minimum_order_value=rule.minimum_order_value,
        points_cost=rule.points_cost,
        is_active=rule.is_active,
        redemption_rule_id=rule.id,
    )


__all__ = [
    "BONUS_SETTING_KEYS",
    "BonusConfiguration",
    "LoyaltyConfigService",
    "RedemptionRuleInput",
    "TierInput",
    "build_bonus_configuration",
    "coupon_definition_for_rule",
    "load_bonus_configuration",
]
