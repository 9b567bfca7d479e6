"""Order payment and delivery state machine with audit logging."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.core.settings import settings
from clubdk_api.models.customer_profile import CustomerProfile
from clubdk_api.models.loyalty import LoyaltyEntryReason, LoyaltyLedgerEntry, LoyaltyOperationType
from clubdk_api.models.order import (
    PAID_STATUSES,
    DeliveryStatusEnum,
    Order,
    OrderItem,
    PaymentStatusEnum,
)
from clubdk_api.models.order_state_event import (
    OrderStateActorTypeEnum,
    OrderStateAxisEnum,
    OrderStateEvent,
)
from clubdk_api.observability.loyalty import get_loyalty_store
from clubdk_api.observability.tracing import get_ledger_tracer
from clubdk_api.services.coupons.inventory import CouponInventory
from clubdk_api.services.exceptions import (
    InvalidTransitionError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
)
from clubdk_api.services.loyalty.accrual import AccrualEngine, AccrualResult
from clubdk_api.services.loyalty.config import LoyaltyConfigService, load_bonus_configuration
from clubdk_api.services.loyalty.ledger import LedgerStore
from clubdk_api.services.transactions import unit_of_work

_CENT = Decimal("0.01")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(_CENT)


def _generate_order_number(now: datetime) -> str:
    return f"DK{now:%y%m%d}-{uuid4().hex[:6].upper()}"


@dataclass(slots=True)
class OrderLine:
    product_name: str
    unit_price: Decimal
    quantity: int = 1
    product_id: str | None = None


@dataclass(slots=True)
class TransitionActor:
    actor_type: OrderStateActorTypeEnum | None = OrderStateActorTypeEnum.SYSTEM
    actor_id: str | None = None
    actor_label: str | None = None


SYSTEM_ACTOR = TransitionActor()


@dataclass(slots=True)
class PaymentConfirmation:
    order: Order
    accrual: AccrualResult | None = None
    referral_entry: LoyaltyLedgerEntry | None = None
    already_confirmed: bool = False

    @property
    def points_awarded(self) -> int:
        return self.accrual.total_points if self.accrual is not None else 0


@dataclass(slots=True)
class PaymentReversal:
    order: Order
    reversal_entries: list[LoyaltyLedgerEntry] = field(default_factory=list)

    @property
    def points_reversed(self) -> int:
        return -sum(entry.points for entry in self.reversal_entries)


@dataclass(slots=True)
class BulkItemOutcome:
    order_id: UUID
    succeeded: bool
    detail: str | None = None
    error_code: str | None = None


@dataclass(slots=True)
class BulkOutcome:
    operation: str
    items: list[BulkItemOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.items if item.succeeded)

    @property
    def skipped(self) -> int:
        return sum(1 for item in self.items if not item.succeeded)


class OrderStateMachine:
    """Drives orders through the payment and delivery axes.

    Payment: Pendente -> Pago | Finalizada, Pendente -> Cancelado, and the
    reversal branch Pago | Finalizada -> Cancelado. Delivery only ever moves to
    its immediate successor, and dispatch requires a paid order. Each public
    operation is one transaction.
    """

    _DELIVERY_SUCCESSORS: dict[DeliveryStatusEnum, DeliveryStatusEnum] = {
        DeliveryStatusEnum.PENDING: DeliveryStatusEnum.DISPATCHED,
        DeliveryStatusEnum.DISPATCHED: DeliveryStatusEnum.DELIVERED,
    }

    def __init__(
        self,
        session: AsyncSession,
        *,
        coupon_attach_policy: str | None = None,
    ) -> None:
        self._session = session
        self._ledger = LedgerStore(session)
        self._inventory = CouponInventory(session)
        self._accrual = AccrualEngine(session, ledger=self._ledger)
        self._config = LoyaltyConfigService(session)
        self._coupon_attach_policy = coupon_attach_policy or settings.coupon_attach_policy

    async def create_order(
        self,
        *,
        customer_id: UUID,
        items: Sequence[OrderLine],
        shipping_cost: Decimal | int = 0,
        user_coupon_id: UUID | None = None,
        donation_amount: Decimal | int = 0,
        payment_method: str | None = None,
        actor: TransitionActor = SYSTEM_ACTOR,
    ) -> Order:
        """Create a pending order with frozen line items and an optional coupon."""

        if not items:
            raise LedgerValidationError("Orders require at least one item")
        for line in items:
            if not line.product_name or not line.product_name.strip():
                raise LedgerValidationError("Order items require a product name")
            if line.quantity < 1:
                raise LedgerValidationError("Order item quantity must be at least 1")
            if Decimal(str(line.unit_price)) < 0:
                raise LedgerValidationError("Order item price cannot be negative")
        shipping = _money(shipping_cost)
        donation = _money(donation_amount)
        if shipping < 0 or donation < 0:
            raise LedgerValidationError("Shipping and donation amounts cannot be negative")

        order_items = [
            OrderItem(
                product_id=line.product_id,
                product_name=line.product_name.strip(),
                quantity=line.quantity,
                unit_price=_money(line.unit_price),
                total_price=_money(Decimal(str(line.unit_price)) * line.quantity),
            )
            for line in items
        ]
        subtotal = sum((item.total_price for item in order_items), Decimal("0.00"))

        async with unit_of_work(self._session):
            if await self._session.get(CustomerProfile, customer_id) is None:
                raise NotFoundError("Customer", customer_id)

            discount = Decimal("0.00")
            attached_coupon_id: UUID | None = None
            if user_coupon_id is not None:
                try:
                    quote = await self._inventory.validate_for_checkout(customer_id, user_coupon_id, subtotal)
                except LedgerValidationError as exc:
                    if self._coupon_attach_policy != "drop":
                        raise
                    logger.info(
                        "Dropped invalid coupon from checkout",
                        customer_id=str(customer_id),
                        user_coupon_id=str(user_coupon_id),
                        reason=str(exc),
                    )
                else:
                    discount = _money(quote.discount_value)
                    attached_coupon_id = quote.user_coupon_id

            now = _utcnow()
            total = subtotal - discount + shipping + donation
            order = Order(
                order_number=_generate_order_number(now),
                customer_id=customer_id,
                status=PaymentStatusEnum.PENDING,
                delivery_status=DeliveryStatusEnum.PENDING,
                subtotal=subtotal,
                shipping_cost=shipping,
                coupon_discount=discount,
                donation_amount=donation,
                total_price=max(total, Decimal("0.00")),
                user_coupon_id=attached_coupon_id,
                payment_method=payment_method,
                created_at=now,
                updated_at=now,
                items=order_items,
            )
            self._session.add(order)
            await self._session.flush()
            self._record_transition(
                order,
                axis=OrderStateAxisEnum.PAYMENT,
                from_status=None,
                to_status=PaymentStatusEnum.PENDING.value,
                actor=actor,
                notes="Order created",
            )

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order.order_number,
            customer_id=str(customer_id),
            subtotal=str(subtotal),
            coupon_discount=str(discount),
        )
        return order

    async def confirm_payment(
        self,
        order_id: UUID,
        *,
        final_status: PaymentStatusEnum = PaymentStatusEnum.PAID,
        actor: TransitionActor = SYSTEM_ACTOR,
        notes: str | None = None,
    ) -> PaymentConfirmation:
        """Mark a pending order paid and apply its coupon, accrual and referral side effects.

        Confirming an order that is already paid returns it unchanged.
        """

        if final_status not in PAID_STATUSES:
            raise LedgerValidationError(f"{final_status.value} is not a paid status")

        with get_ledger_tracer().start_as_current_span("orders.confirm_payment") as span:
            span.set_attribute("order.id", str(order_id))
            async with unit_of_work(self._session):
                order = await self._lock_order(order_id)
                current = order.status
                if current in PAID_STATUSES:
                    logger.info("Payment already confirmed", order_id=str(order.id), status=current.value)
                    return PaymentConfirmation(order=order, already_confirmed=True)
                if current != PaymentStatusEnum.PENDING:
                    raise InvalidTransitionError("payment", current.value, final_status.value)

                now = _utcnow()
                claimed = await self._session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.status == PaymentStatusEnum.PENDING)
                    .values(status=final_status, paid_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await self._session.refresh(order)
                if claimed.rowcount == 0:
                    if order.status in PAID_STATUSES:
                        return PaymentConfirmation(order=order, already_confirmed=True)
                    raise InvalidTransitionError("payment", order.status.value, final_status.value)

                if order.user_coupon_id is not None:
                    await self._inventory.mark_used(order.user_coupon_id, order, now=now)

                config = await load_bonus_configuration(self._session)
                tiers = await self._config.list_tiers()
                accrual = await self._accrual.accrue_for_order(order, config=config, tiers=tiers)
                referral_entry = await self._accrual.grant_referral_for_first_order(order, config=config)

                self._record_transition(
                    order,
                    axis=OrderStateAxisEnum.PAYMENT,
                    from_status=current.value,
                    to_status=final_status.value,
                    actor=actor,
                    notes=notes,
                    metadata={"points_awarded": accrual.total_points},
                )
                await self._session.flush()

            span.set_attribute("loyalty.points", accrual.total_points)

        logger.info(
            "Order payment confirmed",
            order_id=str(order.id),
            status=final_status.value,
            points_awarded=accrual.total_points,
            coupon_used=order.user_coupon_id is not None,
        )
        return PaymentConfirmation(order=order, accrual=accrual, referral_entry=referral_entry)

    async def cancel_order(
        self,
        order_id: UUID,
        *,
        reason: str | None = None,
        actor: TransitionActor = SYSTEM_ACTOR,
    ) -> Order:
        """Cancel an unpaid order. The ledger and any attached coupon are untouched."""

        async with unit_of_work(self._session):
            order = await self._lock_order(order_id)
            current = order.status
            if current != PaymentStatusEnum.PENDING:
                detail = "paid orders are cancelled through reverse_payment" if current in PAID_STATUSES else None
                raise InvalidTransitionError("payment", current.value, PaymentStatusEnum.CANCELLED.value, detail)

            now = _utcnow()
            claimed = await self._session.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == PaymentStatusEnum.PENDING)
                .values(
                    status=PaymentStatusEnum.CANCELLED,
                    cancellation_reason=reason,
                    cancelled_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await self._session.refresh(order)
            if claimed.rowcount == 0:
                raise InvalidTransitionError("payment", order.status.value, PaymentStatusEnum.CANCELLED.value)

            self._record_transition(
                order,
                axis=OrderStateAxisEnum.PAYMENT,
                from_status=current.value,
                to_status=PaymentStatusEnum.CANCELLED.value,
                actor=actor,
                notes=reason,
            )

        logger.info("Order cancelled", order_id=str(order.id), reason=reason)
        return order

    async def reverse_payment(
        self,
        order_id: UUID,
        *,
        reason: str | None = None,
        actor: TransitionActor = SYSTEM_ACTOR,
    ) -> PaymentReversal:
        """Cancel a paid order and post an opposite entry for each of its accruals.

        The consumed coupon stays consumed and no ledger history is removed.
        """

        with get_ledger_tracer().start_as_current_span("orders.reverse_payment") as span:
            span.set_attribute("order.id", str(order_id))
            async with unit_of_work(self._session):
                order = await self._lock_order(order_id)
                current = order.status
                if current not in PAID_STATUSES:
                    raise InvalidTransitionError("payment", current.value, PaymentStatusEnum.CANCELLED.value)

                now = _utcnow()
                claimed = await self._session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.status == current)
                    .values(
                        status=PaymentStatusEnum.CANCELLED,
                        cancellation_reason=reason,
                        cancelled_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await self._session.refresh(order)
                if claimed.rowcount == 0:
                    raise InvalidTransitionError("payment", order.status.value, PaymentStatusEnum.CANCELLED.value)

                reversal = PaymentReversal(order=order)
                accruals = await self._ledger.entries_for_order(
                    order.id, operation_types=[LoyaltyOperationType.ACCRUAL]
                )
                for entry in accruals:
                    reversed_entry = await self._ledger.post_once(
                        entry.customer_id,
                        idempotency_key=f"reversal:{entry.id}",
                        points=-entry.points,
                        operation_type=LoyaltyOperationType.REVERSAL,
                        reason=LoyaltyEntryReason.REVERSAL,
                        description=f"Estorno: {entry.description}"[:500],
                        order_id=order.id,
                        reversed_entry_id=entry.id,
                        allow_negative_balance=True,
                        metadata={"reason": reason} if reason else None,
                    )
                    if reversed_entry is not None:
                        reversal.reversal_entries.append(reversed_entry)

                tiers = await self._config.list_tiers()
                await self._accrual.refresh_customer_tier(order.customer_id, tiers=tiers)
                self._record_transition(
                    order,
                    axis=OrderStateAxisEnum.PAYMENT,
                    from_status=current.value,
                    to_status=PaymentStatusEnum.CANCELLED.value,
                    actor=actor,
                    notes=reason,
                    metadata={"points_reversed": reversal.points_reversed},
                )
                await self._session.flush()

            span.set_attribute("loyalty.points_reversed", reversal.points_reversed)

        logger.info(
            "Order payment reversed",
            order_id=str(order.id),
            from_status=current.value,
            points_reversed=reversal.points_reversed,
        )
        return reversal

    async def advance_delivery(
        self,
        order_id: UUID,
        next_status: DeliveryStatusEnum,
        *,
        info: str | None = None,
        actor: TransitionActor = SYSTEM_ACTOR,
    ) -> Order:
        """Move delivery to its immediate successor, optionally recording tracking info."""

        async with unit_of_work(self._session):
            order = await self._lock_order(order_id)
            current = order.delivery_status
            if self._DELIVERY_SUCCESSORS.get(current) != next_status:
                raise InvalidTransitionError("delivery", current.value, next_status.value)
            if next_status == DeliveryStatusEnum.DISPATCHED and order.status not in PAID_STATUSES:
                raise InvalidTransitionError(
                    "delivery",
                    current.value,
                    next_status.value,
                    f"order payment is {order.status.value}",
                )

            now = _utcnow()
            values: dict[str, object] = {"delivery_status": next_status, "updated_at": now}
            if next_status == DeliveryStatusEnum.DISPATCHED:
                values["dispatched_at"] = now
            else:
                values["delivered_at"] = now
            if info is not None:
                values["delivery_info"] = info.strip() or None

            claimed = await self._session.execute(
                update(Order)
                .where(Order.id == order.id, Order.delivery_status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self._session.refresh(order)
            if claimed.rowcount == 0:
                raise InvalidTransitionError("delivery", order.delivery_status.value, next_status.value)

            self._record_transition(
                order,
                axis=OrderStateAxisEnum.DELIVERY,
                from_status=current.value,
                to_status=next_status.value,
                actor=actor,
                notes=info,
            )

        logger.info(
            "Order delivery advanced",
            order_id=str(order.id),
            from_status=current.value,
            to_status=next_status.value,
        )
        return order

    async def bulk_confirm_payment(
        self,
        order_ids: Iterable[UUID],
        *,
        final_status: PaymentStatusEnum = PaymentStatusEnum.PAID,
        actor: TransitionActor = SYSTEM_ACTOR,
    ) -> BulkOutcome:
        """Confirm each pending order in its own transaction; already paid orders are skipped."""

        async def confirm(order_id: UUID) -> BulkItemOutcome:
            confirmation = await self.confirm_payment(order_id, final_status=final_status, actor=actor)
            if confirmation.already_confirmed:
                return BulkItemOutcome(
                    order_id=order_id,
                    succeeded=False,
                    detail=f"Order already {confirmation.order.status.value}",
                    error_code="already_confirmed",
                )
            return BulkItemOutcome(
                order_id=order_id,
                succeeded=True,
                detail=f"{confirmation.points_awarded} points awarded",
            )

        return await self._run_bulk("confirm_payment", order_ids, confirm)

    async def bulk_advance_delivery(
        self,
        order_ids: Iterable[UUID],
        next_status: DeliveryStatusEnum,
        *,
        info: str | None = None,
        actor: TransitionActor = SYSTEM_ACTOR,
    ) -> BulkOutcome:
        async def advance(order_id: UUID) -> BulkItemOutcome:
            await self.advance_delivery(order_id, next_status, info=info, actor=actor)
            return BulkItemOutcome(order_id=order_id, succeeded=True, detail=next_status.value)

        return await self._run_bulk("advance_delivery", order_ids, advance)

    async def bulk_cancel(
        self,
        order_ids: Iterable[UUID],
        *,
        reason: str | None = None,
        actor: TransitionActor = SYSTEM_ACTOR,
    ) -> BulkOutcome:
        async def cancel(order_id: UUID) -> BulkItemOutcome:
            await self.cancel_order(order_id, reason=reason, actor=actor)
            return BulkItemOutcome(order_id=order_id, succeeded=True)

        return await self._run_bulk("cancel", order_ids, cancel)

    async def get_order(self, order_id: UUID) -> Order:
        order = await self._session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def list_events(self, order_id: UUID) -> list[OrderStateEvent]:
        """Return chronological order state events."""

        await self.get_order(order_id)
        stmt = (
            select(OrderStateEvent)
            .where(OrderStateEvent.order_id == order_id)
            .order_by(OrderStateEvent.created_at.asc(), OrderStateEvent.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def _run_bulk(
        self,
        operation: str,
        order_ids: Iterable[UUID],
        action: Callable[[UUID], Awaitable[BulkItemOutcome]],
    ) -> BulkOutcome:
        outcome = BulkOutcome(operation=operation)
        for order_id in dict.fromkeys(order_ids):
            try:
                item = await action(order_id)
            except LedgerError as exc:
                logger.warning(
                    "Bulk order action skipped",
                    operation=operation,
                    order_id=str(order_id),
                    error_code=exc.code,
                    error=str(exc),
                )
                item = BulkItemOutcome(order_id=order_id, succeeded=False, detail=str(exc), error_code=exc.code)
            outcome.items.append(item)

        get_loyalty_store().record_bulk_outcome(operation, succeeded=outcome.succeeded, skipped=outcome.skipped)
        logger.info(
            "Bulk order action completed",
            operation=operation,
            succeeded=outcome.succeeded,
            skipped=outcome.skipped,
        )
        return outcome

    async def _lock_order(self, order_id: UUID) -> Order:
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def _record_transition(
        self,
        order: Order,
        *,
        axis: OrderStateAxisEnum,
        from_status: str | None,
        to_status: str,
        actor: TransitionActor,
        notes: str | None = None,
        metadata: dict | None = None,
    ) -> OrderStateEvent:
        event = OrderStateEvent(
            order_id=order.id,
            axis=axis,
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            actor_label=actor.actor_label,
            from_status=from_status,
            to_status=to_status,
            notes=notes,
            metadata_json=metadata or {},
        )
        self._session.add(event)
        return event


__all__ = [
    "BulkItemOutcome",
    "BulkOutcome",
    "OrderLine",
    "OrderStateMachine",
    "PaymentConfirmation",
    "PaymentReversal",
    "SYSTEM_ACTOR",
    "TransitionActor",
]
