"""Append-only loyalty ledger and the cached balance it backs."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.models.customer_profile import CustomerProfile
from clubdk_api.models.loyalty import LoyaltyEntryReason, LoyaltyLedgerEntry, LoyaltyOperationType
from clubdk_api.observability.loyalty import get_loyalty_store
from clubdk_api.services.exceptions import (
    InsufficientPointsError,
    LedgerValidationError,
    NotFoundError,
    consistency_failure,
)

LedgerCursor = Tuple[datetime, UUID]


@dataclass(slots=True)
class BalanceMismatch:
    """Customer whose cached balance disagrees with the ledger sum."""

    customer_id: UUID
    email: str
    cached_balance: int
    ledger_balance: int

    @property
    def drift(self) -> int:
        return self.cached_balance - self.ledger_balance


@dataclass(slots=True)
class LedgerReconciliation:
    checked: int
    mismatches: list[BalanceMismatch] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.mismatches


class LedgerStore:
    """Single write path for point movements.

    Every posting runs a conditional balance UPDATE before the ledger row is
    inserted, so the customer row serializes concurrent writers and the
    cached ``points_balance`` always equals the sum of the customer's entries.
    Callers own the transaction; the store only flushes.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def post(
        self,
        customer_id: UUID,
        *,
        points: int,
        operation_type: LoyaltyOperationType,
        reason: LoyaltyEntryReason,
        description: str,
        order_id: UUID | None = None,
        idempotency_key: str | None = None,
        reversed_entry_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
        allow_negative_balance: bool = False,
    ) -> LoyaltyLedgerEntry:
        """Apply ``points`` to the customer's balance and append the matching entry."""

        if isinstance(points, bool) or not isinstance(points, int):
            raise LedgerValidationError("Ledger entries require an integer amount")
        if points == 0:
            raise LedgerValidationError("Ledger entries require a non-zero amount")
        if not description or not description.strip():
            raise LedgerValidationError("Ledger entries require a description")

        stmt = update(CustomerProfile).where(CustomerProfile.id == customer_id)
        if points < 0 and not allow_negative_balance:
            stmt = stmt.where(CustomerProfile.points_balance + points >= 0)
        stmt = stmt.values(points_balance=CustomerProfile.points_balance + points).execution_options(
            synchronize_session=False
        )
        result = await self._db.execute(stmt)
        if result.rowcount == 0:
            balance = await self._db.scalar(
                select(CustomerProfile.points_balance).where(CustomerProfile.id == customer_id)
            )
            if balance is None:
                raise NotFoundError("Customer", customer_id)
            get_loyalty_store().record_rejection("insufficient_points")
            logger.info(
                "Rejected ledger debit",
                customer_id=str(customer_id),
                balance=balance,
                requested=points,
            )
            raise InsufficientPointsError(customer_id, int(balance), -points)

        profile = await self._db.get(CustomerProfile, customer_id, populate_existing=True)
        entry = LoyaltyLedgerEntry(
            customer_id=customer_id,
            points=points,
            balance_after=profile.points_balance,
            operation_type=operation_type,
            reason=reason,
            description=description.strip(),
            order_id=order_id,
            reversed_entry_id=reversed_entry_id,
            idempotency_key=idempotency_key,
            metadata_json=metadata or {},
        )
        self._db.add(entry)
        await self._db.flush()

        if operation_type == LoyaltyOperationType.ACCRUAL:
            get_loyalty_store().record_accrual(reason.value, points)
        logger.info(
            "Recorded loyalty ledger entry",
            customer_id=str(customer_id),
            points=points,
            operation_type=operation_type.value,
            reason=reason.value,
            order_id=str(order_id) if order_id else None,
            balance_after=entry.balance_after,
        )
        return entry

    async def post_once(
        self,
        customer_id: UUID,
        *,
        idempotency_key: str,
        **posting: Any,
    ) -> LoyaltyLedgerEntry | None:
        """Post unless an entry with ``idempotency_key`` already exists for the customer.

        The unique (customer_id, idempotency_key) constraint backs this check
        when two writers race past it.
        """

        if await self.find_by_key(customer_id, idempotency_key) is not None:
            logger.info(
                "Skipped duplicate ledger posting",
                customer_id=str(customer_id),
                idempotency_key=idempotency_key,
            )
            return None
        return await self.post(customer_id, idempotency_key=idempotency_key, **posting)

    async def find_by_key(self, customer_id: UUID, idempotency_key: str) -> LoyaltyLedgerEntry | None:
        stmt = select(LoyaltyLedgerEntry).where(
            LoyaltyLedgerEntry.customer_id == customer_id,
            LoyaltyLedgerEntry.idempotency_key == idempotency_key,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def entries_for_order(
        self,
        order_id: UUID,
        *,
        operation_types: Sequence[LoyaltyOperationType] | None = None,
    ) -> list[LoyaltyLedgerEntry]:
        stmt = (
            select(LoyaltyLedgerEntry)
            .where(LoyaltyLedgerEntry.order_id == order_id)
            .order_by(LoyaltyLedgerEntry.created_at.asc(), LoyaltyLedgerEntry.id.asc())
        )
        if operation_types:
            stmt = stmt.where(LoyaltyLedgerEntry.operation_type.in_(list(operation_types)))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def ledger_balance(self, customer_id: UUID) -> int:
        total = await self._db.scalar(
            select(func.coalesce(func.sum(LoyaltyLedgerEntry.points), 0)).where(
                LoyaltyLedgerEntry.customer_id == customer_id
            )
        )
        return int(total or 0)

    async def history(
        self,
        *,
        customer_id: UUID | None = None,
        limit: int = 25,
        cursor: LedgerCursor | None = None,
        operation_types: Sequence[LoyaltyOperationType] | None = None,
    ) -> tuple[list[LoyaltyLedgerEntry], LedgerCursor | None]:
        """Return a page of entries, newest first, optionally scoped to one customer."""

        bounded_limit = max(1, min(limit, 100))
        stmt = select(LoyaltyLedgerEntry).order_by(
            LoyaltyLedgerEntry.created_at.desc(), LoyaltyLedgerEntry.id.desc()
        )
        if customer_id is not None:
            stmt = stmt.where(LoyaltyLedgerEntry.customer_id == customer_id)
        if operation_types:
            stmt = stmt.where(LoyaltyLedgerEntry.operation_type.in_(list(operation_types)))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    LoyaltyLedgerEntry.created_at < cursor_time,
                    and_(
                        LoyaltyLedgerEntry.created_at == cursor_time,
                        LoyaltyLedgerEntry.id < cursor_id,
                    ),
                )
            )

        result = await self._db.execute(stmt.limit(bounded_limit + 1))
        rows = list(result.scalars().all())
        entries = rows[:bounded_limit]
        next_cursor: LedgerCursor | None = None
        if len(rows) > bounded_limit and entries:
            tail = entries[-1]
            next_cursor = (tail.created_at, tail.id)
        return entries, next_cursor

    async def reconcile(self) -> LedgerReconciliation:
        """Compare every cached balance with its ledger sum and report drift.

        Mismatches are logged as consistency errors; balances are never rewritten.
        """

        totals = (
            select(
                LoyaltyLedgerEntry.customer_id.label("customer_id"),
                func.sum(LoyaltyLedgerEntry.points).label("total"),
            )
            .group_by(LoyaltyLedgerEntry.customer_id)
            .subquery()
        )
        ledger_total = func.coalesce(totals.c.total, 0)
        stmt = (
            select(CustomerProfile.id, CustomerProfile.email, CustomerProfile.points_balance, ledger_total)
            .outerjoin(totals, totals.c.customer_id == CustomerProfile.id)
            .order_by(CustomerProfile.email)
        )
        result = await self._db.execute(stmt)
        rows = result.all()

        report = LedgerReconciliation(checked=len(rows))
        for customer_id, email, cached, ledger in rows:
            if int(cached or 0) == int(ledger or 0):
                continue
            mismatch = BalanceMismatch(
                customer_id=customer_id,
                email=email,
                cached_balance=int(cached or 0),
                ledger_balance=int(ledger or 0),
            )
            report.mismatches.append(mismatch)
            consistency_failure(
                "balance_drift",
                "Cached loyalty balance differs from ledger sum",
                customer_id=str(customer_id),
                cached_balance=mismatch.cached_balance,
                ledger_balance=mismatch.ledger_balance,
            )
        logger.info(
            "Ledger reconciliation completed",
            checked=report.checked,
            mismatches=len(report.mismatches),
        )
        return report


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> LedgerCursor:
    """Decode pagination cursor into datetime and UUID parts."""

    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        timestamp_str, identifier_str = raw.split("|", 1)
        return datetime.fromisoformat(timestamp_str), UUID(identifier_str)
    except ValueError as exc:
        raise LedgerValidationError("Invalid ledger cursor") from exc


__all__ = [
    "BalanceMismatch",
    "LedgerCursor",
    "LedgerReconciliation",
    "LedgerStore",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
]
