"""API endpoints for loyalty profiles, the points ledger, redemptions and admin settings."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.api.dependencies.security import require_checkout_api_key
from clubdk_api.api.errors import http_error_for
from clubdk_api.db.session import get_session
from clubdk_api.jobs.loyalty.reconciliation import reconcile_loyalty_state
from clubdk_api.models.loyalty import LoyaltyLedgerEntry, LoyaltyOperationType, LoyaltyTier, RedemptionRule
from clubdk_api.services.exceptions import LedgerError
from clubdk_api.services.loyalty import (
    BonusConfiguration,
    LoyaltyConfigService,
    LoyaltyService,
    RedemptionEngine,
    RedemptionRuleInput,
    TierInput,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)


router = APIRouter(
    prefix="/loyalty",
    tags=["loyalty"],
    dependencies=[Depends(require_checkout_api_key)],
)


class LoyaltyTierResponse(BaseModel):
    id: UUID
    name: str
    minSpend: float
    maxSpend: Optional[float]
    pointsMultiplier: float


class LoyaltyTierPayload(BaseModel):
    name: str = Field(..., min_length=1)
    minSpend: Decimal = Field(..., ge=0)
    maxSpend: Optional[Decimal] = Field(None, gt=0)
    pointsMultiplier: float = Field(1.0, ge=0)


class TierProgressResponse(BaseModel):
    nextTier: Optional[str]
    amountToNext: float
    progressPercent: float


class CustomerCreateRequest(BaseModel):
    email: str = Field(..., min_length=3)
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    phone: Optional[str] = None
    referralCode: Optional[str] = Field(None, description="Referral code of the customer who invited this one")


class CustomerLoyaltyResponse(BaseModel):
    customerId: UUID
    email: str
    displayName: str
    pointsBalance: int
    spendLast6Months: float
    tier: Optional[str]
    pointsMultiplier: float
    progress: TierProgressResponse
    referralCode: str
    referredBy: Optional[UUID]
    dateOfBirth: Optional[date]
    birthdayBonusGranted: bool
    availableCoupons: int


class LedgerEntryResponse(BaseModel):
    id: UUID
    customerId: UUID
    points: int
    balanceAfter: int
    operationType: str
    reason: str
    description: str
    orderId: Optional[UUID]
    reversedEntryId: Optional[UUID]
    metadata: Dict[str, Any]
    createdAt: str


class LedgerWindowResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    nextCursor: Optional[str] = None


class RedemptionRequest(BaseModel):
    redemptionRuleId: UUID


class RedemptionResponse(BaseModel):
    userCouponId: UUID
    couponCode: str
    couponName: str
    discountValue: float
    minimumOrderValue: float
    expiresAt: Optional[str]
    pointsSpent: int
    balanceAfter: int
    ledgerEntryId: UUID


class AdjustmentRequest(BaseModel):
    points: int = Field(..., description="Signed point delta; must be non-zero")
    reason: str = Field(..., min_length=1)
    actor: Optional[str] = None

    @model_validator(mode="after")
    def _non_zero(self) -> "AdjustmentRequest":
        if self.points == 0:
            raise ValueError("points must be non-zero")
        return self


class BirthDateRequest(BaseModel):
    dateOfBirth: date


class BirthDateResponse(BaseModel):
    customerId: UUID
    dateOfBirth: date
    bonusPoints: int
    pointsBalance: int


class RedemptionRuleResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    pointsCost: int
    discountValue: float
    minimumOrderValue: float
    stockQuantity: Optional[int]
    isActive: bool


class RedemptionRulePayload(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    pointsCost: int = Field(..., gt=0)
    discountValue: Decimal = Field(..., gt=0)
    minimumOrderValue: Decimal = Field(Decimal("0"), ge=0)
    stockQuantity: Optional[int] = Field(None, ge=0)
    isActive: bool = True


class BonusSettingsResponse(BaseModel):
    birthdayBonus: int
    referralBonus: int
    ticketThreshold: float
    ticketBonus: int
    recurrence2nd: int
    recurrence3rd: int
    recurrence4th: int


class BonusSettingsPayload(BaseModel):
    birthdayBonus: Optional[int] = Field(None, ge=0)
    referralBonus: Optional[int] = Field(None, ge=0)
    ticketThreshold: Optional[Decimal] = Field(None, ge=0)
    ticketBonus: Optional[int] = Field(None, ge=0)
    recurrence2nd: Optional[int] = Field(None, ge=0)
    recurrence3rd: Optional[int] = Field(None, ge=0)
    recurrence4th: Optional[int] = Field(None, ge=0)


_SETTING_KEYS = {
    "birthdayBonus": "loyalty_birthday_bonus",
    "referralBonus": "loyalty_referral_bonus",
    "ticketThreshold": "loyalty_ticket_threshold",
    "ticketBonus": "loyalty_ticket_bonus",
    "recurrence2nd": "loyalty_recurrence_2nd",
    "recurrence3rd": "loyalty_recurrence_3rd",
    "recurrence4th": "loyalty_recurrence_4th",
}


@router.post("/customers", response_model=CustomerLoyaltyResponse, status_code=status.HTTP_201_CREATED)
async def create_customer(
    payload: CustomerCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> CustomerLoyaltyResponse:
    service = LoyaltyService(db)
    try:
        profile = await service.create_customer(
            email=payload.email,
            first_name=payload.firstName,
            last_name=payload.lastName,
            phone=payload.phone,
            referral_code=payload.referralCode,
        )
        return await _snapshot_response(service, profile.id)
    except LedgerError as exc:
        raise http_error_for(exc) from exc


@router.get("/customers/{customer_id}", response_model=CustomerLoyaltyResponse)
async def get_customer(customer_id: UUID, db: AsyncSession = Depends(get_session)) -> CustomerLoyaltyResponse:
    try:
        return await _snapshot_response(LoyaltyService(db), customer_id)
    except LedgerError as exc:
        raise http_error_for(exc) from exc


@router.post(
    "/customers/{customer_id}/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_points(
    customer_id: UUID,
    payload: RedemptionRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    """Spend points on a redemption rule and issue the coupon instance."""
    try:
        receipt = await RedemptionEngine(db).redeem(customer_id, payload.redemptionRuleId)
    except LedgerError as exc:
        raise http_error_for(exc) from exc

    coupon = receipt.coupon
    instance = receipt.user_coupon
    return RedemptionResponse(
        userCouponId=instance.id,
        couponCode=coupon.code,
        couponName=coupon.name,
        discountValue=float(coupon.discount_value),
        minimumOrderValue=float(coupon.minimum_order_value or 0),
        expiresAt=instance.expires_at.isoformat() if instance.expires_at else None,
        pointsSpent=-receipt.ledger_entry.points,
        balanceAfter=receipt.balance_after,
        ledgerEntryId=receipt.ledger_entry.id,
    )


@router.post(
    "/customers/{customer_id}/adjustments",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def adjust_points(
    customer_id: UUID,
    payload: AdjustmentRequest,
    db: AsyncSession = Depends(get_session),
) -> LedgerEntryResponse:
    try:
        entry = await LoyaltyService(db).adjust_points(
            customer_id, payload.points, reason=payload.reason, actor=payload.actor
        )
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return _serialize_entry(entry)


@router.post("/customers/{customer_id}/birth-date", response_model=BirthDateResponse)
async def register_birth_date(
    customer_id: UUID,
    payload: BirthDateRequest,
    db: AsyncSession = Depends(get_session),
) -> BirthDateResponse:
    """Record the birth date once; the first registration grants the birthday bonus."""
    try:
        registration = await LoyaltyService(db).register_birth_date(customer_id, payload.dateOfBirth)
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    profile = registration.profile
    return BirthDateResponse(
        customerId=profile.id,
        dateOfBirth=profile.date_of_birth,
        bonusPoints=registration.bonus_entry.points if registration.bonus_entry is not None else 0,
        pointsBalance=int(profile.points_balance or 0),
    )


@router.get("/customers/{customer_id}/ledger", response_model=LedgerWindowResponse)
async def list_customer_ledger(
    customer_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    operationType: Optional[List[LoyaltyOperationType]] = Query(None),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    try:
        entries, next_cursor = await LoyaltyService(db).list_ledger(
            customer_id,
            limit=limit,
            cursor=decode_time_uuid_cursor(cursor) if cursor else None,
            operation_types=operationType,
        )
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return LedgerWindowResponse(
        entries=[_serialize_entry(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.get("/history", response_model=LedgerWindowResponse)
async def list_ledger_history(
    limit: int = Query(50, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    operationType: Optional[List[LoyaltyOperationType]] = Query(None),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    """Global ledger statement across all customers, newest first."""
    try:
        entries, next_cursor = await LoyaltyService(db).list_history(
            limit=limit,
            cursor=decode_time_uuid_cursor(cursor) if cursor else None,
            operation_types=operationType,
        )
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return LedgerWindowResponse(
        entries=[_serialize_entry(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.get("/tiers", response_model=List[LoyaltyTierResponse])
async def list_tiers(db: AsyncSession = Depends(get_session)) -> List[LoyaltyTierResponse]:
    tiers = await LoyaltyConfigService(db).list_tiers()
    return [_serialize_tier(tier) for tier in tiers]


@router.put("/tiers", response_model=List[LoyaltyTierResponse])
async def replace_tiers(
    payload: List[LoyaltyTierPayload],
    db: AsyncSession = Depends(get_session),
) -> List[LoyaltyTierResponse]:
    try:
        tiers = await LoyaltyConfigService(db).replace_tiers(
            [
                TierInput(
                    name=item.name,
                    min_spend=item.minSpend,
                    max_spend=item.maxSpend,
                    points_multiplier=item.pointsMultiplier,
                )
                for item in payload
            ]
        )
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return [_serialize_tier(tier) for tier in tiers]


@router.get("/redemption-rules", response_model=List[RedemptionRuleResponse])
async def list_redemption_rules(
    activeOnly: bool = Query(False),
    db: AsyncSession = Depends(get_session),
) -> List[RedemptionRuleResponse]:
    rules = await LoyaltyConfigService(db).list_redemption_rules(active_only=activeOnly)
    return [_serialize_rule(rule) for rule in rules]


@router.post(
    "/redemption-rules",
    response_model=RedemptionRuleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_redemption_rule(
    payload: RedemptionRulePayload,
    db: AsyncSession = Depends(get_session),
) -> RedemptionRuleResponse:
    try:
        rule = await LoyaltyConfigService(db).upsert_redemption_rule(_rule_input(payload))
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return _serialize_rule(rule)


@router.put("/redemption-rules/{rule_id}", response_model=RedemptionRuleResponse)
async def update_redemption_rule(
    rule_id: UUID,
    payload: RedemptionRulePayload,
    db: AsyncSession = Depends(get_session),
) -> RedemptionRuleResponse:
    try:
        rule = await LoyaltyConfigService(db).upsert_redemption_rule(_rule_input(payload), rule_id=rule_id)
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return _serialize_rule(rule)


@router.get("/settings", response_model=BonusSettingsResponse)
async def get_bonus_settings(db: AsyncSession = Depends(get_session)) -> BonusSettingsResponse:
    try:
        config = await LoyaltyConfigService(db).get_bonus_settings()
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return _serialize_settings(config)


@router.put("/settings", response_model=BonusSettingsResponse)
async def update_bonus_settings(
    payload: BonusSettingsPayload,
    db: AsyncSession = Depends(get_session),
) -> BonusSettingsResponse:
    updates = {
        _SETTING_KEYS[field]: value
        for field, value in payload.model_dump(exclude_none=True).items()
    }
    if not updates:
        raise HTTPException(status_code=422, detail="No settings supplied")
    try:
        config = await LoyaltyConfigService(db).update_bonus_settings(updates)
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return _serialize_settings(config)


@router.get("/reconciliation")
async def reconcile_ledger(db: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    """Compare cached balances and coupon links with the ledger; reports only."""
    summary = await reconcile_loyalty_state(db)
    return summary.as_dict()


async def _snapshot_response(service: LoyaltyService, customer_id: UUID) -> CustomerLoyaltyResponse:
    snapshot = await service.snapshot(customer_id)
    progress = snapshot.progress
    return CustomerLoyaltyResponse(
        customerId=snapshot.customer_id,
        email=snapshot.email,
        displayName=snapshot.display_name,
        pointsBalance=snapshot.points_balance,
        spendLast6Months=float(snapshot.spend_last_6_months),
        tier=snapshot.tier.name if snapshot.tier is not None else None,
        pointsMultiplier=float(snapshot.tier.points_multiplier) if snapshot.tier is not None else 1.0,
        progress=TierProgressResponse(
            nextTier=progress.next_tier.name if progress.next_tier is not None else None,
            amountToNext=float(progress.amount_to_next),
            progressPercent=progress.progress_percent,
        ),
        referralCode=snapshot.referral_code,
        referredBy=snapshot.referred_by_id,
        dateOfBirth=snapshot.date_of_birth,
        birthdayBonusGranted=snapshot.birthday_bonus_granted,
        availableCoupons=snapshot.available_coupons,
    )


def _serialize_entry(entry: LoyaltyLedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        customerId=entry.customer_id,
        points=entry.points,
        balanceAfter=entry.balance_after,
        operationType=entry.operation_type.value,
        reason=entry.reason.value,
        description=entry.description,
        orderId=entry.order_id,
        reversedEntryId=entry.reversed_entry_id,
        metadata=entry.metadata_json if isinstance(entry.metadata_json, dict) else {},
        createdAt=entry.created_at.isoformat(),
    )


def _serialize_tier(tier: LoyaltyTier) -> LoyaltyTierResponse:
    return LoyaltyTierResponse(
        id=tier.id,
        name=tier.name,
        minSpend=float(tier.min_spend),
        maxSpend=float(tier.max_spend) if tier.max_spend is not None else None,
        pointsMultiplier=float(tier.points_multiplier),
    )


def _rule_input(payload: RedemptionRulePayload) -> RedemptionRuleInput:
    return RedemptionRuleInput(
        name=payload.name,
        description=payload.description,
        points_cost=payload.pointsCost,
        discount_value=payload.discountValue,
        minimum_order_value=payload.minimumOrderValue,
        stock_quantity=payload.stockQuantity,
        is_active=payload.isActive,
    )


def _serialize_rule(rule: RedemptionRule) -> RedemptionRuleResponse:
    return RedemptionRuleResponse(
        id=rule.id,
        name=rule.name,
        description=rule.description,
        pointsCost=rule.points_cost,
        discountValue=float(rule.discount_value),
        minimumOrderValue=float(rule.minimum_order_value or 0),
        stockQuantity=rule.stock_quantity,
        isActive=bool(rule.is_active),
    )


def _serialize_settings(config: BonusConfiguration) -> BonusSettingsResponse:
    return BonusSettingsResponse(
        birthdayBonus=config.birthday_bonus,
        referralBonus=config.referral_bonus,
        ticketThreshold=float(config.ticket_threshold),
        ticketBonus=config.ticket_bonus,
        recurrence2nd=config.recurrence_2nd,
        recurrence3rd=config.recurrence_3rd,
        recurrence4th=config.recurrence_4th,
    )
