"""Loyalty tiers, ledger, bonus settings and redemption rules."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from clubdk_api.db.base import Base
from ._columns import utcnow, value_enum


class LoyaltyTier(Base):
    """Spend band with the multiplier applied to base accrual."""

    __tablename__ = "loyalty_tiers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False, unique=True)
    min_spend = Column(Numeric(12, 2), nullable=False)
    max_spend = Column(Numeric(12, 2), nullable=True)
    points_multiplier = Column(Float, nullable=False, default=1.0, server_default="1")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class LoyaltyOperationType(str, Enum):
    """Ledger entry categories."""

    ACCRUAL = "accrual"
    REDEMPTION = "redemption"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    REVERSAL = "reversal"


class LoyaltyEntryReason(str, Enum):
    """Machine-readable reason code carried by each ledger entry."""

    BASE = "base"
    HIGH_TICKET = "high_ticket"
    RECURRENCE = "recurrence"
    BIRTHDAY = "birthday"
    REFERRAL = "referral"
    REDEMPTION = "redemption"
    MANUAL = "manual"
    REVERSAL = "reversal"


class LoyaltyLedgerEntry(Base):
    """Append-only point movement. Rows are never updated or deleted."""

    __tablename__ = "loyalty_ledger_entries"
    __table_args__ = (
        UniqueConstraint("customer_id", "idempotency_key", name="uq_loyalty_ledger_customer_idempotency"),
        CheckConstraint("points <> 0", name="ck_loyalty_ledger_points_non_zero"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customer_profiles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    points = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    operation_type = Column(value_enum(LoyaltyOperationType, "loyalty_operation_type_enum"), nullable=False)
    reason = Column(value_enum(LoyaltyEntryReason, "loyalty_entry_reason_enum"), nullable=False)
    description = Column(String(500), nullable=False)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="RESTRICT"), nullable=True, index=True)
    reversed_entry_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_ledger_entries.id", ondelete="RESTRICT"),
        nullable=True,
    )
    idempotency_key = Column(String(128), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True
    )

    customer = relationship("CustomerProfile", lazy="raise")


class LoyaltySetting(Base):
    """Key/value row backing the bonus configuration."""

    __tablename__ = "loyalty_settings"

    key = Column(String(64), primary_key=True)
    value = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class RedemptionRule(Base):
    """Catalogue entry a customer can exchange points for."""

    __tablename__ = "loyalty_redemption_rules"
    __table_args__ = (
        CheckConstraint("points_cost > 0", name="ck_redemption_rules_points_cost_positive"),
        CheckConstraint(
            "stock_quantity IS NULL OR stock_quantity >= 0",
            name="ck_redemption_rules_stock_non_negative",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    points_cost = Column(Integer, nullable=False)
    discount_value = Column(Numeric(12, 2), nullable=False)
    minimum_order_value = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    stock_quantity = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
