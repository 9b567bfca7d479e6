"""Customer-facing loyalty workflows: profiles, birth date, adjustments and history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.models.coupon import UserCoupon
from clubdk_api.models.customer_profile import CustomerProfile
from clubdk_api.models.loyalty import (
    LoyaltyEntryReason,
    LoyaltyLedgerEntry,
    LoyaltyOperationType,
    LoyaltyTier,
)
from clubdk_api.services.exceptions import LedgerValidationError, NotFoundError
from clubdk_api.services.loyalty.accrual import AccrualEngine
from clubdk_api.services.loyalty.config import LoyaltyConfigService, load_bonus_configuration
from clubdk_api.services.loyalty.ledger import LedgerCursor, LedgerStore
from clubdk_api.services.loyalty.tiers import TierProgress, tier_progress
from clubdk_api.services.transactions import unit_of_work


@dataclass(slots=True)
class CustomerLoyaltySnapshot:
    customer_id: UUID
    email: str
    display_name: str
    points_balance: int
    spend_last_6_months: Decimal
    tier: LoyaltyTier | None
    progress: TierProgress
    referral_code: str
    referred_by_id: UUID | None
    date_of_birth: date | None
    birthday_bonus_granted: bool
    available_coupons: int


@dataclass(slots=True)
class BirthDateRegistration:
    profile: CustomerProfile
    bonus_entry: LoyaltyLedgerEntry | None


class LoyaltyService:
    """Coordinates profile-level loyalty workflows on top of the ledger store."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session
        self._ledger = LedgerStore(session)
        self._accrual = AccrualEngine(session, ledger=self._ledger)
        self._config = LoyaltyConfigService(session)

    async def create_customer(
        self,
        *,
        email: str,
        first_name: str | None = None,
        last_name: str | None = None,
        phone: str | None = None,
        referral_code: str | None = None,
    ) -> CustomerProfile:
        """Register a profile, linking the referrer when a valid referral code is given."""

        normalized_email = email.strip().lower()
        if not normalized_email:
            raise LedgerValidationError("Customers require an email")

        async with unit_of_work(self._db):
            existing = await self._db.scalar(
                select(CustomerProfile.id).where(CustomerProfile.email == normalized_email)
            )
            if existing is not None:
                raise LedgerValidationError(f"Customer {normalized_email} already exists")

            referrer_id: UUID | None = None
            if referral_code:
                referrer_id = await self._db.scalar(
                    select(CustomerProfile.id).where(CustomerProfile.referral_code == referral_code.strip().upper())
                )
                if referrer_id is None:
                    raise LedgerValidationError(f"Unknown referral code {referral_code}")

            profile = CustomerProfile(
                email=normalized_email,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                referral_code=await self._generate_unique_referral_code(),
                referred_by_id=referrer_id,
                points_balance=0,
                spend_last_6_months=Decimal("0"),
            )
            self._db.add(profile)
            await self._db.flush()

        logger.info(
            "Created customer profile",
            customer_id=str(profile.id),
            referred_by=str(referrer_id) if referrer_id else None,
        )
        return profile

    async def get_customer(self, customer_id: UUID) -> CustomerProfile:
        profile = await self._db.get(CustomerProfile, customer_id)
        if profile is None:
            raise NotFoundError("Customer", customer_id)
        return profile

    async def snapshot(self, customer_id: UUID) -> CustomerLoyaltySnapshot:
        """Return balance, tier and progress for the customer's loyalty card."""

        profile = await self.get_customer(customer_id)
        tiers = await self._config.list_tiers()
        spend = Decimal(profile.spend_last_6_months or 0)
        progress = tier_progress(tiers, spend)
        available = await self._db.scalar(
            select(func.count(UserCoupon.id)).where(
                UserCoupon.customer_id == customer_id,
                UserCoupon.is_used.is_(False),
                UserCoupon.archived_at.is_(None),
                (UserCoupon.expires_at.is_(None)) | (UserCoupon.expires_at > datetime.now(timezone.utc)),
            )
        )
        return CustomerLoyaltySnapshot(
            customer_id=profile.id,
            email=profile.email,
            display_name=profile.display_name,
            points_balance=int(profile.points_balance or 0),
            spend_last_6_months=spend,
            tier=next((tier for tier in tiers if tier.id == profile.tier_id), None),
            progress=progress,
            referral_code=profile.referral_code,
            referred_by_id=profile.referred_by_id,
            date_of_birth=profile.date_of_birth,
            birthday_bonus_granted=bool(profile.birthday_bonus_granted),
            available_coupons=int(available or 0),
        )

    async def register_birth_date(self, customer_id: UUID, date_of_birth: date) -> BirthDateRegistration:
        """Store the birth date once and grant the birthday bonus on that first write.

        Re-sending the stored date is a no-op; a different date is rejected.
        """

        if date_of_birth > datetime.now(timezone.utc).date():
            raise LedgerValidationError("Birth date cannot be in the future")

        async with unit_of_work(self._db):
            profile = await self.get_customer(customer_id)
            if profile.date_of_birth is not None:
                if profile.date_of_birth != date_of_birth:
                    raise LedgerValidationError("Birth date is already registered and cannot be changed")
                return BirthDateRegistration(profile=profile, bonus_entry=None)

            profile.date_of_birth = date_of_birth
            await self._db.flush()
            config = await load_bonus_configuration(self._db)
            entry = await self._accrual.grant_birthday_bonus(customer_id, config=config)

        logger.info(
            "Registered customer birth date",
            customer_id=str(customer_id),
            bonus_points=entry.points if entry is not None else 0,
        )
        return BirthDateRegistration(profile=profile, bonus_entry=entry)

    async def adjust_points(
        self,
        customer_id: UUID,
        points: int,
        *,
        reason: str,
        actor: str | None = None,
    ) -> LoyaltyLedgerEntry:
        """Manual operator adjustment through the regular ledger write path."""

        if not reason or not reason.strip():
            raise LedgerValidationError("Manual adjustments require a reason")

        async with unit_of_work(self._db):
            entry = await self._ledger.post(
                customer_id,
                points=points,
                operation_type=LoyaltyOperationType.MANUAL_ADJUSTMENT,
                reason=LoyaltyEntryReason.MANUAL,
                description=reason,
                metadata={"actor": actor} if actor else None,
            )

        logger.info(
            "Applied manual loyalty adjustment",
            customer_id=str(customer_id),
            points=points,
            actor=actor,
        )
        return entry

    async def list_ledger(
        self,
        customer_id: UUID,
        *,
        limit: int = 25,
        cursor: LedgerCursor | None = None,
        operation_types: Sequence[LoyaltyOperationType] | None = None,
    ) -> tuple[list[LoyaltyLedgerEntry], LedgerCursor | None]:
        await self.get_customer(customer_id)
        return await self._ledger.history(
            customer_id=customer_id,
            limit=limit,
            cursor=cursor,
            operation_types=operation_types,
        )

    async def list_history(
        self,
        *,
        limit: int = 50,
        cursor: LedgerCursor | None = None,
        operation_types: Sequence[LoyaltyOperationType] | None = None,
    ) -> tuple[list[LoyaltyLedgerEntry], LedgerCursor | None]:
        return await self._ledger.history(limit=limit, cursor=cursor, operation_types=operation_types)

    async def _generate_unique_referral_code(self) -> str:
        candidate = f"DK{uuid4().hex[:6].upper()}"
        stmt = select(CustomerProfile.id).where(CustomerProfile.referral_code == candidate)
        if await self._db.scalar(stmt) is not None:
            return await self._generate_unique_referral_code()
        return candidate


__all__ = ["BirthDateRegistration", "CustomerLoyaltySnapshot", "LoyaltyService"]
