"""Coupon definitions and the per-customer instances issued from them."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from clubdk_api.db.base import Base
from ._columns import utcnow


class Coupon(Base):
    """Coupon definition. Loyalty definitions are bound to one redemption rule."""

    __tablename__ = "coupons"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    discount_value = Column(Numeric(12, 2), nullable=False)
    minimum_order_value = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    points_cost = Column(Integer, nullable=False, default=0, server_default="0")
    stock_quantity = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    redemption_rule_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_redemption_rules.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    instances = relationship("UserCoupon", back_populates="coupon")


class UserCoupon(Base):
    """Single-use coupon owned by a customer."""

    __tablename__ = "user_coupons"
    __table_args__ = (
        CheckConstraint(
            "(is_used AND order_id IS NOT NULL) OR (NOT is_used AND order_id IS NULL)",
            name="ck_user_coupons_used_order_link",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    coupon_id = Column(UUID(as_uuid=True), ForeignKey("coupons.id", ondelete="RESTRICT"), nullable=False)
    customer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customer_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    is_used = Column(Boolean, nullable=False, default=False, server_default="false")
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="RESTRICT"), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    coupon = relationship("Coupon", back_populates="instances", lazy="selectin")
    customer = relationship("CustomerProfile", lazy="raise")
    order = relationship("Order", foreign_keys=[order_id], lazy="raise")
