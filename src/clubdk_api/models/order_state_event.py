"""Order state transition audit log models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from clubdk_api.db.base import Base
from ._columns import utcnow, value_enum


class OrderStateAxisEnum(str, Enum):
    """Which of the two independent order statuses moved."""

    PAYMENT = "payment"
    DELIVERY = "delivery"


class OrderStateActorTypeEnum(str, Enum):
    """Identity of the actor emitting the order event."""

    SYSTEM = "system"
    CUSTOMER = "customer"
    OPERATOR = "operator"
    ADMIN = "admin"
    GATEWAY = "gateway"


class OrderStateEvent(Base):
    """Audit log entry capturing every payment and delivery transition."""

    __tablename__ = "order_state_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    axis = Column(value_enum(OrderStateAxisEnum, "order_state_axis_enum"), nullable=False)
    actor_type = Column(value_enum(OrderStateActorTypeEnum, "order_state_actor_type_enum"), nullable=True)
    actor_id = Column(String(255), nullable=True)
    actor_label = Column(String(255), nullable=True)
    from_status = Column(String(64), nullable=True)
    to_status = Column(String(64), nullable=True)
    notes = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="state_events")
