"""Coupon inventory exports."""

from .inventory import (  # noqa: F401
    CouponDeletion,
    CouponInventory,
    CouponLinkViolation,
    CouponQuote,
    UserCouponView,
)
