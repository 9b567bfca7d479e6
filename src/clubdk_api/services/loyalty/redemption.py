"""Exchange points for single-use coupons."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.core.settings import settings
from clubdk_api.models.coupon import Coupon, UserCoupon
from clubdk_api.models.loyalty import LoyaltyEntryReason, LoyaltyLedgerEntry, LoyaltyOperationType, RedemptionRule
from clubdk_api.observability.loyalty import get_loyalty_store
from clubdk_api.observability.tracing import get_ledger_tracer
from clubdk_api.services.exceptions import LedgerValidationError, NotFoundError
from clubdk_api.services.loyalty.config import coupon_definition_for_rule
from clubdk_api.services.loyalty.ledger import LedgerStore
from clubdk_api.services.transactions import unit_of_work


@dataclass(slots=True)
class RedemptionReceipt:
    user_coupon: UserCoupon
    coupon: Coupon
    ledger_entry: LoyaltyLedgerEntry

    @property
    def balance_after(self) -> int:
        return self.ledger_entry.balance_after


class RedemptionEngine:
    """Debit points and issue the coupon instance in one transaction."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: LedgerStore | None = None,
        expiry_days: int | None = None,
    ) -> None:
        self._db = session
        self._ledger = ledger or LedgerStore(session)
        self._expiry_days = expiry_days if expiry_days is not None else settings.coupon_expiry_days

    async def redeem(
        self,
        customer_id: UUID,
        redemption_rule_id: UUID,
        *,
        now: datetime | None = None,
    ) -> RedemptionReceipt:
        issued_at = now or datetime.now(timezone.utc)
        with get_ledger_tracer().start_as_current_span("loyalty.redeem") as span:
            span.set_attribute("loyalty.customer_id", str(customer_id))
            span.set_attribute("loyalty.redemption_rule_id", str(redemption_rule_id))

            async with unit_of_work(self._db):
                rule = await self._db.get(RedemptionRule, redemption_rule_id)
                if rule is None:
                    raise NotFoundError("Redemption rule", redemption_rule_id)
                if not rule.is_active:
                    raise LedgerValidationError(f"Redemption rule {rule.name} is not active")

                if rule.stock_quantity is not None:
                    claimed = await self._db.execute(
                        update(RedemptionRule)
                        .where(RedemptionRule.id == rule.id, RedemptionRule.stock_quantity > 0)
                        .values(stock_quantity=RedemptionRule.stock_quantity - 1)
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount == 0:
                        get_loyalty_store().record_rejection("out_of_stock")
                        raise LedgerValidationError(f"Redemption rule {rule.name} is out of stock")

                entry = await self._ledger.post(
                    customer_id,
                    points=-rule.points_cost,
                    operation_type=LoyaltyOperationType.REDEMPTION,
                    reason=LoyaltyEntryReason.REDEMPTION,
                    description=f"Resgate: {rule.name}",
                    metadata={"redemption_rule_id": str(rule.id)},
                )

                coupon = await self._definition_for(rule)
                user_coupon = UserCoupon(
                    coupon_id=coupon.id,
                    customer_id=customer_id,
                    created_at=issued_at,
                    expires_at=issued_at + timedelta(days=self._expiry_days),
                    is_used=False,
                )
                self._db.add(user_coupon)
                await self._db.flush()
                entry.metadata_json = {**entry.metadata_json, "user_coupon_id": str(user_coupon.id)}
                await self._db.flush()

            span.set_attribute("loyalty.points", rule.points_cost)

        get_loyalty_store().record_redemption(rule.points_cost)
        logger.info(
            "Redeemed loyalty points",
            customer_id=str(customer_id),
            redemption_rule_id=str(rule.id),
            points=rule.points_cost,
            user_coupon_id=str(user_coupon.id),
            balance_after=entry.balance_after,
        )
        return RedemptionReceipt(user_coupon=user_coupon, coupon=coupon, ledger_entry=entry)

    async def _definition_for(self, rule: RedemptionRule) -> Coupon:
        coupon = await self._db.scalar(select(Coupon).where(Coupon.redemption_rule_id == rule.id))
        if coupon is None:
            coupon = coupon_definition_for_rule(rule)
            self._db.add(coupon)
            await self._db.flush()
        return coupon


__all__ = ["RedemptionEngine", "RedemptionReceipt"]
