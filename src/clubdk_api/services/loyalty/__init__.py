"""Loyalty service exports."""

from .accrual import AccrualComponent, AccrualEngine, AccrualResult  # noqa: F401
from .config import (  # noqa: F401
    BonusConfiguration,
    LoyaltyConfigService,
    RedemptionRuleInput,
    TierInput,
    load_bonus_configuration,
)
from .ledger import (  # noqa: F401
    BalanceMismatch,
    LedgerReconciliation,
    LedgerStore,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)
from .loyalty_service import BirthDateRegistration, CustomerLoyaltySnapshot, LoyaltyService  # noqa: F401
from .redemption import RedemptionEngine, RedemptionReceipt  # noqa: F401
from .tiers import TierProgress, resolve_tier, tier_progress  # noqa: F401
