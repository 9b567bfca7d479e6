"""Customer coupon instances: listing, checkout validation, consumption and maintenance."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.models.coupon import Coupon, UserCoupon
from clubdk_api.models.customer_profile import CustomerProfile
from clubdk_api.models.order import Order, PaymentStatusEnum
from clubdk_api.services.exceptions import (
    LedgerValidationError,
    NotFoundError,
    consistency_failure,
)
from clubdk_api.services.transactions import unit_of_work


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class CouponQuote:
    """Discount a validated coupon instance grants at checkout."""

    user_coupon_id: UUID
    code: str
    discount_value: Decimal
    minimum_order_value: Decimal
    expires_at: datetime | None


@dataclass(slots=True)
class UserCouponView:
    id: UUID
    customer_id: UUID
    customer_name: str
    coupon_name: str
    code: str
    discount_value: Decimal
    minimum_order_value: Decimal
    created_at: datetime
    expires_at: datetime | None
    is_used: bool
    is_expired: bool
    used_at: datetime | None
    archived_at: datetime | None
    order_id: UUID | None
    order_number: str | None
    order_created_at: datetime | None


@dataclass(slots=True)
class CouponDeletion:
    user_coupon_id: UUID
    archived: bool


@dataclass(slots=True)
class CouponLinkViolation:
    user_coupon_id: UUID
    is_used: bool
    order_id: UUID | None


class CouponInventory:
    """Owns the unused -> used transition of coupon instances."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def list_for_customer(
        self,
        customer_id: UUID,
        *,
        include_archived: bool = False,
        now: datetime | None = None,
    ) -> list[UserCouponView]:
        if await self._db.get(CustomerProfile, customer_id) is None:
            raise NotFoundError("Customer", customer_id)
        stmt = self._projection().where(UserCoupon.customer_id == customer_id)
        if not include_archived:
            stmt = stmt.where(UserCoupon.archived_at.is_(None))
        return await self._views(stmt, now=now)

    async def list_all(
        self,
        *,
        include_archived: bool = True,
        limit: int = 200,
        offset: int = 0,
        now: datetime | None = None,
    ) -> list[UserCouponView]:
        stmt = self._projection()
        if not include_archived:
            stmt = stmt.where(UserCoupon.archived_at.is_(None))
        stmt = stmt.limit(max(1, min(limit, 500))).offset(max(0, offset))
        return await self._views(stmt, now=now)

    async def validate_for_checkout(
        self,
        customer_id: UUID,
        user_coupon_id: UUID,
        subtotal: Decimal,
        *,
        now: datetime | None = None,
        exclude_order_id: UUID | None = None,
    ) -> CouponQuote:
        """Check that the instance can discount this checkout. Never mutates."""

        now = now or datetime.now(timezone.utc)
        instance = await self._db.get(UserCoupon, user_coupon_id)
        if instance is None:
            raise NotFoundError("Coupon", user_coupon_id)
        if instance.customer_id != customer_id:
            raise LedgerValidationError("Coupon belongs to another customer")
        if instance.archived_at is not None:
            raise LedgerValidationError("Coupon has been archived")
        if instance.is_used:
            raise LedgerValidationError("Coupon has already been used")
        expires_at = _ensure_aware(instance.expires_at)
        if expires_at is not None and expires_at <= now:
            raise LedgerValidationError("Coupon has expired")

        definition = await self._db.get(Coupon, instance.coupon_id)
        if definition is None:
            raise consistency_failure(
                "coupon_definition_missing",
                "Coupon instance references a missing definition",
                user_coupon_id=str(instance.id),
            )
        minimum = Decimal(definition.minimum_order_value or 0)
        if Decimal(subtotal) < minimum:
            raise LedgerValidationError(f"Coupon requires a minimum order of {minimum}")

        pending = select(Order.id).where(
            Order.user_coupon_id == instance.id,
            Order.status == PaymentStatusEnum.PENDING,
        )
        if exclude_order_id is not None:
            pending = pending.where(Order.id != exclude_order_id)
        if await self._db.scalar(pending.limit(1)) is not None:
            raise LedgerValidationError("Coupon is already attached to a pending order")

        return CouponQuote(
            user_coupon_id=instance.id,
            code=definition.code,
            discount_value=Decimal(definition.discount_value),
            minimum_order_value=minimum,
            expires_at=expires_at,
        )

    async def mark_used(self, user_coupon_id: UUID, order: Order, *, now: datetime | None = None) -> UserCoupon:
        """Consume the instance for ``order``. Re-marking for the same order is a no-op."""

        instance = await self._db.get(UserCoupon, user_coupon_id, with_for_update=True, populate_existing=True)
        if instance is None:
            raise consistency_failure(
                "coupon_missing",
                "Order references a coupon instance that no longer exists",
                order_id=str(order.id),
                user_coupon_id=str(user_coupon_id),
            )
        if instance.is_used:
            if instance.order_id == order.id:
                return instance
            raise consistency_failure(
                "coupon_reused",
                "Coupon instance already consumed by another order",
                order_id=str(order.id),
                user_coupon_id=str(user_coupon_id),
                consumed_by=str(instance.order_id),
            )
        if instance.customer_id != order.customer_id:
            raise consistency_failure(
                "coupon_owner_mismatch",
                "Order customer does not own the attached coupon",
                order_id=str(order.id),
                user_coupon_id=str(user_coupon_id),
            )

        used_at = now or datetime.now(timezone.utc)
        result = await self._db.execute(
            update(UserCoupon)
            .where(
                UserCoupon.id == user_coupon_id,
                UserCoupon.is_used.is_(False),
                UserCoupon.order_id.is_(None),
            )
            .values(is_used=True, order_id=order.id, used_at=used_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise consistency_failure(
                "coupon_reused",
                "Coupon instance was consumed concurrently",
                order_id=str(order.id),
                user_coupon_id=str(user_coupon_id),
            )
        await self._db.refresh(instance)
        logger.info(
            "Marked coupon used",
            user_coupon_id=str(user_coupon_id),
            order_id=str(order.id),
            customer_id=str(order.customer_id),
        )
        return instance

    async def delete(self, user_coupon_id: UUID, *, now: datetime | None = None) -> CouponDeletion:
        """Remove an instance. Used ones are archived so the order link survives."""

        async with unit_of_work(self._db):
            instance = await self._db.get(UserCoupon, user_coupon_id)
            if instance is None:
                raise NotFoundError("Coupon", user_coupon_id)

            if instance.is_used:
                if instance.archived_at is None:
                    instance.archived_at = now or datetime.now(timezone.utc)
                    await self._db.flush()
                outcome = CouponDeletion(user_coupon_id=user_coupon_id, archived=True)
            else:
                attached = await self._db.scalar(
                    select(Order.id)
                    .where(
                        Order.user_coupon_id == user_coupon_id,
                        Order.status == PaymentStatusEnum.PENDING,
                    )
                    .limit(1)
                )
                if attached is not None:
                    raise LedgerValidationError("Coupon is attached to a pending order")
                await self._db.delete(instance)
                await self._db.flush()
                outcome = CouponDeletion(user_coupon_id=user_coupon_id, archived=False)

        logger.info(
            "Deleted coupon instance",
            user_coupon_id=str(user_coupon_id),
            archived=outcome.archived,
        )
        return outcome

    async def find_link_violations(self) -> list[CouponLinkViolation]:
        """Instances where ``is_used`` and the order link disagree."""

        stmt = select(UserCoupon.id, UserCoupon.is_used, UserCoupon.order_id).where(
            or_(
                and_(UserCoupon.is_used.is_(True), UserCoupon.order_id.is_(None)),
                and_(UserCoupon.is_used.is_(False), UserCoupon.order_id.is_not(None)),
            )
        )
        result = await self._db.execute(stmt)
        return [
            CouponLinkViolation(user_coupon_id=row_id, is_used=bool(is_used), order_id=order_id)
            for row_id, is_used, order_id in result.all()
        ]

    def _projection(self):
        return (
            select(UserCoupon, Coupon, CustomerProfile, Order)
            .join(Coupon, Coupon.id == UserCoupon.coupon_id)
            .join(CustomerProfile, CustomerProfile.id == UserCoupon.customer_id)
            .outerjoin(Order, Order.id == UserCoupon.order_id)
            .order_by(UserCoupon.created_at.desc(), UserCoupon.id.desc())
        )

    async def _views(self, stmt, *, now: datetime | None) -> list[UserCouponView]:
        now = now or datetime.now(timezone.utc)
        result = await self._db.execute(stmt)
        return [self._to_view(row, now) for row in result.all()]

    @staticmethod
    def _to_view(row: Sequence, now: datetime) -> UserCouponView:
        instance, coupon, customer, order = row
        expires_at = _ensure_aware(instance.expires_at)
        return UserCouponView(
            id=instance.id,
            customer_id=instance.customer_id,
            customer_name=customer.display_name,
            coupon_name=coupon.name,
            code=coupon.code,
            discount_value=Decimal(coupon.discount_value),
            minimum_order_value=Decimal(coupon.minimum_order_value or 0),
            created_at=_ensure_aware(instance.created_at),
            expires_at=expires_at,
            is_used=bool(instance.is_used),
            is_expired=bool(expires_at is not None and expires_at <= now and not instance.is_used),
            used_at=_ensure_aware(instance.used_at),
            archived_at=_ensure_aware(instance.archived_at),
            order_id=instance.order_id,
            order_number=order.order_number if order is not None else None,
            order_created_at=_ensure_aware(order.created_at) if order is not None else None,
        )


__all__ = [
    "CouponDeletion",
    "CouponInventory",
    "CouponLinkViolation",
    "CouponQuote",
    "UserCouponView",
]
