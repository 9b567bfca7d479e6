"""Point accrual for paid orders and the one-time bonus events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.core.settings import settings
from clubdk_api.models.customer_profile import CustomerProfile
from clubdk_api.models.loyalty import (
    LoyaltyEntryReason,
    LoyaltyLedgerEntry,
    LoyaltyOperationType,
    LoyaltyTier,
)
from clubdk_api.models.order import PAID_STATUSES, Order
from clubdk_api.services.exceptions import LedgerValidationError, NotFoundError
from clubdk_api.services.loyalty.config import BonusConfiguration
from clubdk_api.services.loyalty.ledger import LedgerStore
from clubdk_api.services.loyalty.tiers import multiplier_for, resolve_tier

BIRTHDAY_KEY = "birthday"


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _shift_months(value: datetime, months: int) -> datetime:
    month_index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    # Clamp to the last valid day, e.g. 31 Aug minus 6 months -> 28/29 Feb.
    day = value.day
    while True:
        try:
            return value.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


def referral_key(referred_id: UUID) -> str:
    return f"referral:{referred_id}"


def order_accrual_key(order_id: UUID, reason: LoyaltyEntryReason) -> str:
    return f"order:{order_id}:{reason.value}"


@dataclass(slots=True)
class AccrualComponent:
    reason: LoyaltyEntryReason
    points: int
    description: str


@dataclass(slots=True)
class AccrualResult:
    order_id: UUID
    customer_id: UUID
    net_value: Decimal
    trailing_spend: Decimal
    tier_name: str | None
    multiplier: float
    monthly_ordinal: int
    entries: list[LoyaltyLedgerEntry] = field(default_factory=list)

    @property
    def total_points(self) -> int:
        return sum(entry.points for entry in self.entries)


class AccrualEngine:
    """Turns a paid order into ledger entries.

    Base points scale with the tier resolved from trailing spend, and the
    high-ticket and monthly recurrence bonuses are separate entries. Callers
    own the transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: LedgerStore | None = None,
        window_months: int | None = None,
    ) -> None:
        self._db = session
        self._ledger = ledger or LedgerStore(session)
        self._window_months = window_months or settings.tier_window_months

    @staticmethod
    def compute_components(
        net_value: Decimal,
        *,
        multiplier: float,
        monthly_ordinal: int,
        config: BonusConfiguration,
        order_label: str = "",
    ) -> list[AccrualComponent]:
        """Return the positive accrual components for an order's net value."""

        if net_value < 0:
            raise LedgerValidationError("Net order value cannot be negative")
        label = f" {order_label}" if order_label else ""
        components: list[AccrualComponent] = []

        base = int((net_value * Decimal(str(multiplier))).to_integral_value(rounding=ROUND_DOWN))
        if base > 0:
            components.append(AccrualComponent(LoyaltyEntryReason.BASE, base, f"Pontos da compra{label}"))

        if config.qualifies_for_ticket_bonus(net_value):
            components.append(
                AccrualComponent(
                    LoyaltyEntryReason.HIGH_TICKET,
                    config.ticket_bonus,
                    f"Bônus ticket alto{label}",
                )
            )

        recurrence = config.recurrence_bonus_for(monthly_ordinal)
        if recurrence > 0:
            ordinal_label = f"{min(monthly_ordinal, 4)}ª" + ("+" if monthly_ordinal >= 4 else "")
            components.append(
                AccrualComponent(
                    LoyaltyEntryReason.RECURRENCE,
                    recurrence,
                    f"Bônus recorrência ({ordinal_label} compra do mês){label}",
                )
            )
        return components

    async def trailing_spend(
        self,
        customer_id: UUID,
        *,
        as_of: datetime,
        exclude_order_id: UUID | None = None,
    ) -> Decimal:
        """Net value of paid orders inside the trailing window ending at ``as_of``."""

        as_of = _ensure_aware(as_of)
        window_start = _shift_months(as_of, -self._window_months)
        paid_on = func.coalesce(Order.paid_at, Order.created_at)
        net = Order.subtotal - Order.coupon_discount
        stmt = select(func.coalesce(func.sum(case((net > 0, net), else_=0)), 0)).where(
            Order.customer_id == customer_id,
            Order.status.in_(list(PAID_STATUSES)),
            paid_on >= window_start,
            paid_on <= as_of,
        )
        if exclude_order_id is not None:
            stmt = stmt.where(Order.id != exclude_order_id)
        total = await self._db.scalar(stmt)
        return Decimal(str(total or 0)).quantize(Decimal("0.01"))

    async def monthly_paid_ordinal(self, order: Order) -> int:
        """Position of ``order`` among the customer's paid orders created in the same month."""

        created = _ensure_aware(order.created_at)
        start = _month_start(created)
        end = _shift_months(start, 1)
        stmt = select(func.count(Order.id)).where(
            Order.customer_id == order.customer_id,
            Order.status.in_(list(PAID_STATUSES)),
            Order.created_at >= start,
            Order.created_at < end,
        )
        count = int(await self._db.scalar(stmt) or 0)
        return max(count, 1)

    async def accrue_for_order(
        self,
        order: Order,
        *,
        config: BonusConfiguration,
        tiers: Sequence[LoyaltyTier],
    ) -> AccrualResult:
        """Write the accrual entries for a freshly paid order and refresh the cached tier."""

        paid_at = _ensure_aware(order.paid_at or datetime.now(timezone.utc))
        spend = await self.trailing_spend(order.customer_id, as_of=paid_at, exclude_order_id=order.id)
        tier = resolve_tier(tiers, spend)
        multiplier = multiplier_for(tier)
        ordinal = await self.monthly_paid_ordinal(order)
        net_value = order.net_value

        result = AccrualResult(
            order_id=order.id,
            customer_id=order.customer_id,
            net_value=net_value,
            trailing_spend=spend,
            tier_name=tier.name if tier is not None else None,
            multiplier=multiplier,
            monthly_ordinal=ordinal,
        )
        components = self.compute_components(
            net_value,
            multiplier=multiplier,
            monthly_ordinal=ordinal,
            config=config,
            order_label=order.order_number,
        )
        for component in components:
            entry = await self._ledger.post_once(
                order.customer_id,
                idempotency_key=order_accrual_key(order.id, component.reason),
                points=component.points,
                operation_type=LoyaltyOperationType.ACCRUAL,
                reason=component.reason,
                description=component.description,
                order_id=order.id,
                metadata={
                    "net_value": str(net_value),
                    "tier": result.tier_name,
                    "multiplier": multiplier,
                    "monthly_ordinal": ordinal,
                },
            )
            if entry is not None:
                result.entries.append(entry)

        await self.refresh_customer_tier(order.customer_id, tiers=tiers, as_of=paid_at)
        logger.info(
            "Accrued loyalty points for order",
            order_id=str(order.id),
            customer_id=str(order.customer_id),
            net_value=str(net_value),
            tier=result.tier_name,
            monthly_ordinal=ordinal,
            points=result.total_points,
        )
        return result

    async def refresh_customer_tier(
        self,
        customer_id: UUID,
        *,
        tiers: Sequence[LoyaltyTier],
        as_of: datetime | None = None,
    ) -> LoyaltyTier | None:
        """Recompute the cached trailing spend and tier from paid orders."""

        profile = await self._db.get(CustomerProfile, customer_id)
        if profile is None:
            raise NotFoundError("Customer", customer_id)
        spend = await self.trailing_spend(customer_id, as_of=as_of or datetime.now(timezone.utc))
        tier = resolve_tier(tiers, spend)
        profile.spend_last_6_months = spend
        profile.tier_id = tier.id if tier is not None else None
        await self._db.flush()
        return tier

    async def grant_birthday_bonus(
        self, customer_id: UUID, *, config: BonusConfiguration
    ) -> LoyaltyLedgerEntry | None:
        """Grant the one-time birthday bonus; later calls are no-ops."""

        profile = await self._db.get(CustomerProfile, customer_id)
        if profile is None:
            raise NotFoundError("Customer", customer_id)
        if profile.birthday_bonus_granted or config.birthday_bonus <= 0:
            return None

        entry = await self._ledger.post_once(
            customer_id,
            idempotency_key=BIRTHDAY_KEY,
            points=config.birthday_bonus,
            operation_type=LoyaltyOperationType.ACCRUAL,
            reason=LoyaltyEntryReason.BIRTHDAY,
            description="Bônus de aniversário",
        )
        profile.birthday_bonus_granted = True
        await self._db.flush()
        return entry

    async def grant_referral_bonus(
        self,
        referrer_id: UUID,
        referred_id: UUID,
        *,
        config: BonusConfiguration,
        order_id: UUID | None = None,
    ) -> LoyaltyLedgerEntry | None:
        """Credit the referrer once per referred customer."""

        if referrer_id == referred_id:
            raise LedgerValidationError("Customers cannot refer themselves")
        if config.referral_bonus <= 0:
            return None
        return await self._ledger.post_once(
            referrer_id,
            idempotency_key=referral_key(referred_id),
            points=config.referral_bonus,
            operation_type=LoyaltyOperationType.ACCRUAL,
            reason=LoyaltyEntryReason.REFERRAL,
            description="Bônus de indicação",
            order_id=order_id,
            metadata={"referred_customer_id": str(referred_id)},
        )

    async def grant_referral_for_first_order(
        self, order: Order, *, config: BonusConfiguration
    ) -> LoyaltyLedgerEntry | None:
        """Pay the referrer when ``order`` is the referred customer's first paid order."""

        customer = await self._db.get(CustomerProfile, order.customer_id)
        if customer is None:
            raise NotFoundError("Customer", order.customer_id)
        if customer.referred_by_id is None:
            return None
        paid_orders = await self._db.scalar(
            select(func.count(Order.id)).where(
                Order.customer_id == order.customer_id,
                Order.status.in_(list(PAID_STATUSES)),
            )
        )
        if int(paid_orders or 0) != 1:
            return None
        return await self.grant_referral_bonus(
            customer.referred_by_id,
            customer.id,
            config=config,
            order_id=order.id,
        )


__all__ = [
    "AccrualComponent",
    "AccrualEngine",
    "AccrualResult",
    "order_accrual_key",
    "referral_key",
]
