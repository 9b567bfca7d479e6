"""Customer loyalty profile."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from clubdk_api.db.base import Base
from ._columns import utcnow


class CustomerProfile(Base):
    """Storefront customer with the cached loyalty balance and trailing spend.

    ``points_balance`` is a cache of the ledger sum and is only written through
    :class:`clubdk_api.services.loyalty.ledger.LedgerStore`.
    """

    __tablename__ = "customer_profiles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String(32), nullable=True)
    tier_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_tiers.id", ondelete="SET NULL"), nullable=True)
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    spend_last_6_months = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    date_of_birth = Column(Date, nullable=True)
    birthday_bonus_granted = Column(Boolean, nullable=False, default=False, server_default="false")
    referral_code = Column(String(16), nullable=False, unique=True, index=True)
    referred_by_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customer_profiles.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    tier = relationship("LoyaltyTier", lazy="selectin")
    referred_by = relationship("CustomerProfile", remote_side=[id], lazy="raise")

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) if parts else self.email
