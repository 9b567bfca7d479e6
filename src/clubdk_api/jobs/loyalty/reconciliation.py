"""Ledger reconciliation sweep ("Sincronizar Dados")."""

# meta: job: loyalty-reconciliation

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.services.coupons.inventory import CouponInventory, CouponLinkViolation
from clubdk_api.services.exceptions import consistency_failure
from clubdk_api.services.loyalty.ledger import BalanceMismatch, LedgerStore

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


@dataclass(slots=True)
class ReconciliationSummary:
    customers_checked: int
    balance_mismatches: List[BalanceMismatch] = field(default_factory=list)
    coupon_violations: List[CouponLinkViolation] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.balance_mismatches and not self.coupon_violations

    def as_dict(self) -> Dict[str, Any]:
        return {
            "customers_checked": self.customers_checked,
            "consistent": self.consistent,
            "balance_mismatches": [
                {
                    "customer_id": str(item.customer_id),
                    "email": item.email,
                    "cached_balance": item.cached_balance,
                    "ledger_balance": item.ledger_balance,
                    "drift": item.drift,
                }
                for item in self.balance_mismatches
            ],
            "coupon_violations": [
                {
                    "user_coupon_id": str(item.user_coupon_id),
                    "is_used": item.is_used,
                    "order_id": str(item.order_id) if item.order_id else None,
                }
                for item in self.coupon_violations
            ],
        }


async def reconcile_loyalty_state(session: AsyncSession) -> ReconciliationSummary:
    """Report ledger and coupon invariant violations without repairing anything."""

    ledger_report = await LedgerStore(session).reconcile()
    violations = await CouponInventory(session).find_link_violations()
    for violation in violations:
        consistency_failure(
            "coupon_link",
            "Coupon usage flag and order link disagree",
            user_coupon_id=str(violation.user_coupon_id),
            is_used=violation.is_used,
            order_id=str(violation.order_id) if violation.order_id else None,
        )
    return ReconciliationSummary(
        customers_checked=ledger_report.checked,
        balance_mismatches=list(ledger_report.mismatches),
        coupon_violations=violations,
    )


async def run_ledger_reconciliation(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Run the reconciliation sweep in its own session and return a serializable summary."""

    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    async with session as managed_session:
        summary = await reconcile_loyalty_state(managed_session)
        await managed_session.rollback()

    payload = summary.as_dict()
    logger.bind(summary={k: v for k, v in payload.items() if k != "coupon_violations"}).info(
        "Loyalty reconciliation sweep completed"
    )
    return payload
