from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from clubdk_api.db.base import Base
from ._columns import utcnow, value_enum


class PaymentStatusEnum(str, Enum):
    PENDING = "Pendente"
    PAID = "Pago"
    FINALIZED = "Finalizada"
    CANCELLED = "Cancelado"


class DeliveryStatusEnum(str, Enum):
    PENDING = "Pendente"
    DISPATCHED = "Despachado"
    DELIVERED = "Entregue"


PAID_STATUSES = frozenset({PaymentStatusEnum.PAID, PaymentStatusEnum.FINALIZED})


class Order(Base):
    __tablename__ = "orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_number = Column(String, nullable=False, unique=True)
    customer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customer_profiles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    status = Column(
        value_enum(PaymentStatusEnum, "order_payment_status_enum"),
        nullable=False,
        default=PaymentStatusEnum.PENDING,
        server_default=PaymentStatusEnum.PENDING.value,
    )
    delivery_status = Column(
        value_enum(DeliveryStatusEnum, "order_delivery_status_enum"),
        nullable=False,
        default=DeliveryStatusEnum.PENDING,
        server_default=DeliveryStatusEnum.PENDING.value,
    )
    subtotal = Column(Numeric(12, 2), nullable=False, server_default="0")
    shipping_cost = Column(Numeric(12, 2), nullable=False, server_default="0")
    coupon_discount = Column(Numeric(12, 2), nullable=False, server_default="0")
    donation_amount = Column(Numeric(12, 2), nullable=False, server_default="0")
    total_price = Column(Numeric(12, 2), nullable=False, server_default="0")
    # Points at user_coupons.id; user_coupons.order_id carries the enforced link once used.
    user_coupon_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    payment_method = Column(String(64), nullable=True)
    delivery_info = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    paid_at = Column(DateTime(timezone=True), nullable=True, index=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    customer = relationship("CustomerProfile", lazy="raise")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.created_at",
    )
    state_events = relationship(
        "OrderStateEvent",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStateEvent.created_at",
        lazy="raise",
    )

    @property
    def net_value(self) -> Decimal:
        """Merchandise value after the coupon discount; shipping and donation excluded."""

        net = Decimal(self.subtotal or 0) - Decimal(self.coupon_discount or 0)
        return net if net > 0 else Decimal("0")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(String(64), nullable=True)
    product_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, server_default="1")
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    # Relationships
    order = relationship("Order", back_populates="items")
