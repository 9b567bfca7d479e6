"""Order lifecycle API endpoints."""

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from clubdk_api.api.dependencies.security import require_checkout_api_key
from clubdk_api.api.errors import http_error_for
from clubdk_api.db.session import get_session
from clubdk_api.models.order import DeliveryStatusEnum, Order, PaymentStatusEnum
from clubdk_api.models.order_state_event import OrderStateActorTypeEnum, OrderStateEvent
from clubdk_api.services.exceptions import LedgerError
from clubdk_api.services.orders.state_machine import (
    BulkOutcome,
    OrderLine,
    OrderStateMachine,
    TransitionActor,
)


router = APIRouter(prefix="/orders", tags=["orders"])


class OrderItemCreate(BaseModel):
    """Request model for creating order items."""
    product_id: Optional[str] = Field(None, description="Catalog product identifier")
    product_name: str = Field(..., min_length=1, description="Product name snapshot")
    quantity: int = Field(1, ge=1, description="Item quantity")
    unit_price: Decimal = Field(..., ge=0, description="Unit price")


class OrderCreate(BaseModel):
    """Request model for checkout."""
    customer_id: UUID = Field(..., description="Customer placing the order")
    items: List[OrderItemCreate] = Field(..., min_length=1, description="Order items")
    shipping_cost: Decimal = Field(Decimal("0"), ge=0, description="Shipping charged on the order")
    donation_amount: Decimal = Field(Decimal("0"), ge=0, description="Optional donation added at checkout")
    user_coupon_id: Optional[UUID] = Field(None, description="Coupon instance to apply")
    payment_method: Optional[str] = Field(None, description="Payment method label (pix, card, ...)")


class OrderItemResponse(BaseModel):
    id: str
    product_id: Optional[str]
    product_name: str
    quantity: int
    unit_price: float
    total_price: float


class OrderResponse(BaseModel):
    id: str
    order_number: str
    customer_id: str
    status: str
    delivery_status: str
    subtotal: float
    shipping_cost: float
    coupon_discount: float
    donation_amount: float
    total_price: float
    user_coupon_id: Optional[str]
    payment_method: Optional[str]
    delivery_info: Optional[str]
    cancellation_reason: Optional[str]
    created_at: str
    paid_at: Optional[str]
    cancelled_at: Optional[str]
    items: List[OrderItemResponse]


class ActorFields(BaseModel):
    actorType: Optional[str] = Field(
        default="operator",
        description="Actor classification (system|customer|operator|admin|gateway).",
    )
    actorId: Optional[str] = Field(default=None, description="Optional identifier for the actor.")
    actorLabel: Optional[str] = Field(default=None, description="Human-readable actor display name.")


class ConfirmPaymentRequest(ActorFields):
    final_status: Literal["Pago", "Finalizada"] = Field("Pago", description="Paid status to record")
    notes: Optional[str] = None


class PaymentConfirmationResponse(BaseModel):
    order: OrderResponse
    alreadyConfirmed: bool
    pointsAwarded: int
    referralBonusPoints: int = 0


class CancelOrderRequest(ActorFields):
    reason: Optional[str] = Field(None, description="Cancellation reason shown to operators")


class PaymentReversalResponse(BaseModel):
    order: OrderResponse
    pointsReversed: int
    reversalEntryIds: List[str]


class DeliveryAdvanceRequest(ActorFields):
    next_status: Literal["Despachado", "Entregue"]
    info: Optional[str] = Field(None, description="Tracking code or delivery notes")


class BulkConfirmRequest(ActorFields):
    order_ids: List[UUID] = Field(..., min_length=1)
    final_status: Literal["Pago", "Finalizada"] = "Pago"


class BulkDeliveryRequest(ActorFields):
    order_ids: List[UUID] = Field(..., min_length=1)
    next_status: Literal["Despachado", "Entregue"]
    info: Optional[str] = None


class BulkCancelRequest(ActorFields):
    order_ids: List[UUID] = Field(..., min_length=1)
    reason: Optional[str] = None


class BulkItemResponse(BaseModel):
    orderId: str
    succeeded: bool
    detail: Optional[str] = None
    errorCode: Optional[str] = None


class BulkOutcomeResponse(BaseModel):
    operation: str
    succeeded: int
    skipped: int
    items: List[BulkItemResponse]


class OrderStateEventResponse(BaseModel):
    """Timeline entry describing a payment or delivery transition."""

    id: str
    axis: str = Field(..., description="Which status moved (payment or delivery)")
    actorType: Optional[str] = None
    actorId: Optional[str] = None
    actorLabel: Optional[str] = None
    fromStatus: Optional[str] = Field(default=None, description="Previous status value.")
    toStatus: Optional[str] = Field(default=None, description="New status value.")
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    createdAt: str


@router.post(
    "/",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_checkout_api_key)],
)
async def create_order(
    order_data: OrderCreate,
    db: AsyncSession = Depends(get_session),
) -> OrderResponse:
    """Create a pending order, applying a coupon instance when one is supplied."""
    try:
        machine = OrderStateMachine(db)
        order = await machine.create_order(
            customer_id=order_data.customer_id,
            items=[
                OrderLine(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in order_data.items
            ],
            shipping_cost=order_data.shipping_cost,
            donation_amount=order_data.donation_amount,
            user_coupon_id=order_data.user_coupon_id,
            payment_method=order_data.payment_method,
            actor=TransitionActor(actor_type=OrderStateActorTypeEnum.CUSTOMER, actor_id=str(order_data.customer_id)),
        )
        return _order_to_response(await _load_order(db, order.id))
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    except HTTPException:
        raise
    except Exception as e:
        logger.error(
            "Failed to create order",
            error=str(e),
            customer_id=str(order_data.customer_id),
        )
        raise HTTPException(status_code=500, detail="Failed to create order")


@router.post(
    "/bulk/confirm-payment",
    response_model=BulkOutcomeResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def bulk_confirm_payment(
    payload: BulkConfirmRequest,
    db: AsyncSession = Depends(get_session),
) -> BulkOutcomeResponse:
    machine = OrderStateMachine(db)
    outcome = await machine.bulk_confirm_payment(
        payload.order_ids,
        final_status=PaymentStatusEnum(payload.final_status),
        actor=_actor_from(payload),
    )
    return _bulk_to_response(outcome)


@router.post(
    "/bulk/delivery",
    response_model=BulkOutcomeResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def bulk_advance_delivery(
    payload: BulkDeliveryRequest,
    db: AsyncSession = Depends(get_session),
) -> BulkOutcomeResponse:
    machine = OrderStateMachine(db)
    outcome = await machine.bulk_advance_delivery(
        payload.order_ids,
        DeliveryStatusEnum(payload.next_status),
        info=payload.info,
        actor=_actor_from(payload),
    )
    return _bulk_to_response(outcome)


@router.post(
    "/bulk/cancel",
    response_model=BulkOutcomeResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def bulk_cancel(
    payload: BulkCancelRequest,
    db: AsyncSession = Depends(get_session),
) -> BulkOutcomeResponse:
    machine = OrderStateMachine(db)
    outcome = await machine.bulk_cancel(payload.order_ids, reason=payload.reason, actor=_actor_from(payload))
    return _bulk_to_response(outcome)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def get_order(order_id: UUID, db: AsyncSession = Depends(get_session)) -> OrderResponse:
    return _order_to_response(await _load_order(db, order_id))


@router.post(
    "/{order_id}/confirm-payment",
    response_model=PaymentConfirmationResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def confirm_payment(
    order_id: UUID,
    payload: Optional[ConfirmPaymentRequest] = None,
    db: AsyncSession = Depends(get_session),
) -> PaymentConfirmationResponse:
    """Mark an order paid; repeated confirmations return the order unchanged."""
    payload = payload or ConfirmPaymentRequest()
    try:
        confirmation = await OrderStateMachine(db).confirm_payment(
            order_id,
            final_status=PaymentStatusEnum(payload.final_status),
            actor=_actor_from(payload),
            notes=payload.notes,
        )
    except LedgerError as exc:
        raise http_error_for(exc) from exc

    referral = confirmation.referral_entry
    return PaymentConfirmationResponse(
        order=_order_to_response(await _load_order(db, order_id)),
        alreadyConfirmed=confirmation.already_confirmed,
        pointsAwarded=confirmation.points_awarded,
        referralBonusPoints=referral.points if referral is not None else 0,
    )


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def cancel_order(
    order_id: UUID,
    payload: Optional[CancelOrderRequest] = None,
    db: AsyncSession = Depends(get_session),
) -> OrderResponse:
    payload = payload or CancelOrderRequest()
    try:
        await OrderStateMachine(db).cancel_order(order_id, reason=payload.reason, actor=_actor_from(payload))
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return _order_to_response(await _load_order(db, order_id))


@router.post(
    "/{order_id}/reverse-payment",
    response_model=PaymentReversalResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def reverse_payment(
    order_id: UUID,
    payload: Optional[CancelOrderRequest] = None,
    db: AsyncSession = Depends(get_session),
) -> PaymentReversalResponse:
    """Cancel a paid order and reverse the points it earned."""
    payload = payload or CancelOrderRequest()
    try:
        reversal = await OrderStateMachine(db).reverse_payment(
            order_id, reason=payload.reason, actor=_actor_from(payload)
        )
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return PaymentReversalResponse(
        order=_order_to_response(await _load_order(db, order_id)),
        pointsReversed=reversal.points_reversed,
        reversalEntryIds=[str(entry.id) for entry in reversal.reversal_entries],
    )


@router.post(
    "/{order_id}/delivery",
    response_model=OrderResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def advance_delivery(
    order_id: UUID,
    payload: DeliveryAdvanceRequest,
    db: AsyncSession = Depends(get_session),
) -> OrderResponse:
    try:
        await OrderStateMachine(db).advance_delivery(
            order_id,
            DeliveryStatusEnum(payload.next_status),
            info=payload.info,
            actor=_actor_from(payload),
        )
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return _order_to_response(await _load_order(db, order_id))


@router.get(
    "/{order_id}/state-events",
    response_model=List[OrderStateEventResponse],
    dependencies=[Depends(require_checkout_api_key)],
)
async def list_order_state_events(
    order_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[OrderStateEventResponse]:
    """Return the chronological audit log for an order."""
    try:
        events = await OrderStateMachine(db).list_events(order_id)
    except LedgerError as exc:
        raise http_error_for(exc) from exc
    return [_serialize_state_event(event) for event in events]


async def _load_order(db: AsyncSession, order_id: UUID) -> Order:
    stmt = (
        select(Order)
        .options(selectinload(Order.items))
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    order = (await db.execute(stmt)).scalar_one_or_none()
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _order_to_response(order: Order) -> OrderResponse:
    return OrderResponse(
        id=str(order.id),
        order_number=order.order_number,
        customer_id=str(order.customer_id),
        status=order.status.value,
        delivery_status=order.delivery_status.value,
        subtotal=float(order.subtotal),
        shipping_cost=float(order.shipping_cost),
        coupon_discount=float(order.coupon_discount),
        donation_amount=float(order.donation_amount),
        total_price=float(order.total_price),
        user_coupon_id=str(order.user_coupon_id) if order.user_coupon_id else None,
        payment_method=order.payment_method,
        delivery_info=order.delivery_info,
        cancellation_reason=order.cancellation_reason,
        created_at=order.created_at.isoformat(),
        paid_at=_isoformat(order.paid_at),
        cancelled_at=_isoformat(order.cancelled_at),
        items=[
            OrderItemResponse(
                id=str(item.id),
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=float(item.unit_price),
                total_price=float(item.total_price),
            )
            for item in order.items
        ],
    )


def _parse_actor_type(value: str | None) -> OrderStateActorTypeEnum | None:
    if not value:
        return None
    try:
        return OrderStateActorTypeEnum(value.lower())
    except ValueError:
        return None


def _actor_from(payload: ActorFields) -> TransitionActor:
    return TransitionActor(
        actor_type=_parse_actor_type(payload.actorType),
        actor_id=payload.actorId,
        actor_label=payload.actorLabel,
    )


def _bulk_to_response(outcome: BulkOutcome) -> BulkOutcomeResponse:
    return BulkOutcomeResponse(
        operation=outcome.operation,
        succeeded=outcome.succeeded,
        skipped=outcome.skipped,
        items=[
            BulkItemResponse(
                orderId=str(item.order_id),
                succeeded=item.succeeded,
                detail=item.detail,
                errorCode=item.error_code,
            )
            for item in outcome.items
        ],
    )


def _serialize_state_event(event: OrderStateEvent) -> OrderStateEventResponse:
    return OrderStateEventResponse(
        id=str(event.id),
        axis=event.axis.value,
        actorType=event.actor_type.value if event.actor_type else None,
        actorId=event.actor_id,
        actorLabel=event.actor_label,
        fromStatus=event.from_status,
        toStatus=event.to_status,
        notes=event.notes,
        metadata=event.metadata_json if isinstance(event.metadata_json, dict) else {},
        createdAt=event.created_at.isoformat(),
    )
