"""Coupon inventory endpoints for the storefront and the operator console."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.api.dependencies.security import require_checkout_api_key
from clubdk_api.api.errors import http_error_for
from clubdk_api.db.session import get_session
from clubdk_api.services.coupons import CouponInventory, UserCouponView
from clubdk_api.services.exceptions import LedgerError


router = APIRouter(
    prefix="/coupons",
    tags=["coupons"],
    dependencies=[Depends(require_checkout_api_key)],
)


class UserCouponResponse(BaseModel):
    id: UUID
    customerId: UUID
    customerName: str
    couponName: str
    code: str
    discountValue: float
    minimumOrderValue: float
    createdAt: str
    expiresAt: Optional[str]
    isUsed: bool
    isExpired: bool
    usedAt: Optional[str]
    archivedAt: Optional[str]
    orderId: Optional[UUID]
    orderNumber: Optional[str]
    orderCreatedAt: Optional[str]


class CouponValidationRequest(BaseModel):
    userCouponId: UUID
    subtotal: Decimal = Field(..., ge=0)


class CouponValidationResponse(BaseModel):
    userCouponId: UUID
    code: str
    discountValue: float
    minimumOrderValue: float
    expiresAt: Optional[str]


class CouponDeletionResponse(BaseModel):
    userCouponId: UUID
    archived: bool = Field(..., description="True when the used instance was archived instead of removed")


@router.get("/customers/{customer_id}", response_model=List[UserCouponResponse])
async def list_customer_coupons(
    customer_id: UUID,
    includeArchived: bool = Query(False),
    db: AsyncSession = Depends(get_session),
) -> List[UserCouponResponse]:
    try:
        views = await CouponInventory(db).list_for_customer(customer_id, include_archived=includeArchived)
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return [_serialize_view(view) for view in views]


@router.post("/customers/{customer_id}/validate", response_model=CouponValidationResponse)
async def validate_coupon(
    customer_id: UUID,
    payload: CouponValidationRequest,
    db: AsyncSession = Depends(get_session),
) -> CouponValidationResponse:
    """Preview whether a coupon instance applies to a checkout subtotal."""
    try:
        quote = await CouponInventory(db).validate_for_checkout(customer_id, payload.userCouponId, payload.subtotal)
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return CouponValidationResponse(
        userCouponId=quote.user_coupon_id,
        code=quote.code,
        discountValue=float(quote.discount_value),
        minimumOrderValue=float(quote.minimum_order_value),
        expiresAt=_isoformat(quote.expires_at),
    )


@router.get("/", response_model=List[UserCouponResponse])
async def list_all_coupons(
    includeArchived: bool = Query(True),
    limit: int = Query(200, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> List[UserCouponResponse]:
    views = await CouponInventory(db).list_all(include_archived=includeArchived, limit=limit, offset=offset)
    return [_serialize_view(view) for view in views]


@router.delete("/{user_coupon_id}", response_model=CouponDeletionResponse)
async def delete_coupon(user_coupon_id: UUID, db: AsyncSession = Depends(get_session)) -> CouponDeletionResponse:
    try:
        outcome = await CouponInventory(db).delete(user_coupon_id)
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return CouponDeletionResponse(userCouponId=outcome.user_coupon_id, archived=outcome.archived)


def _isoformat(value: datetime | None) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _serialize_view(view: UserCouponView) -> UserCouponResponse:
    return UserCouponResponse(
        id=view.id,
        customerId=view.customer_id,
        customerName=view.customer_name,
        couponName=view.coupon_name,
        code=view.code,
        discountValue=float(view.discount_value),
        minimumOrderValue=float(view.minimum_order_value),
        createdAt=view.created_at.isoformat(),
        expiresAt=_isoformat(view.expires_at),
        isUsed=view.is_used,
        isExpired=view.is_expired,
        usedAt=_isoformat(view.used_at),
        archivedAt=_isoformat(view.archived_at),
        orderId=view.order_id,
        orderNumber=view.order_number,
        orderCreatedAt=_isoformat(view.order_created_at),
    )
