"""SQLAlchemy models package."""

# Import all models
from .coupon import Coupon, UserCoupon  # noqa: F401
from .customer_profile import CustomerProfile  # noqa: F401
from .loyalty import (  # noqa: F401
    LoyaltyEntryReason,
    LoyaltyLedgerEntry,
    LoyaltyOperationType,
    LoyaltySetting,
    LoyaltyTier,
    RedemptionRule,
)
from .order import (  # noqa: F401
    PAID_STATUSES,
    DeliveryStatusEnum,
    Order,
    OrderItem,
    PaymentStatusEnum,
)
from .order_state_event import (  # noqa: F401
    OrderStateActorTypeEnum,
    OrderStateAxisEnum,
    OrderStateEvent,
)
