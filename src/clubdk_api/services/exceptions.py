"""Domain errors raised by the ledger, coupon and order services."""

from __future__ import annotations

from typing import Any

from loguru import logger

from clubdk_api.observability.loyalty import get_loyalty_store


class LedgerError(RuntimeError):
    """Base exception for ledger and order lifecycle failures."""

    code = "ledger_error"


class NotFoundError(LedgerError):
    """Raised when a referenced customer, order, rule or coupon does not exist."""

    code = "not_found"

    def __init__(self, resource: str, identifier: Any) -> None:
        super().__init__(f"{resource} {identifier} not found")
        self.resource = resource
        self.identifier = identifier


class InvalidTransitionError(LedgerError):
    """Raised when a payment or delivery transition is not allowed."""

    code = "invalid_transition"

    def __init__(self, axis: str, current: str, requested: str, detail: str | None = None) -> None:
        message = f"Cannot move {axis} status from {current} to {requested}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.axis = axis
        self.current = current
        self.requested = requested


class InsufficientPointsError(LedgerError):
    """Raised when a debit would drive the balance below zero."""

    code = "insufficient_points"

    def __init__(self, customer_id: Any, balance: int, required: int) -> None:
        super().__init__(f"Customer {customer_id} has {balance} points, {required} required")
        self.customer_id = customer_id
        self.balance = balance
        self.required = required


class LedgerConsistencyError(LedgerError):
    """Raised when stored state violates a ledger or coupon invariant."""

    code = "consistency_error"


class LedgerValidationError(LedgerError):
    """Raised for malformed input or business-rule rejections."""

    code = "validation_error"


def consistency_failure(kind: str, message: str, **context: Any) -> LedgerConsistencyError:
    """Log and count an invariant violation and return the error for the caller to raise."""

    logger.bind(consistency_error=True).error(message, kind=kind, **context)
    get_loyalty_store().record_consistency_error(kind)
    return LedgerConsistencyError(message)


__all__ = [
    "InsufficientPointsError",
    "InvalidTransitionError",
    "LedgerConsistencyError",
    "LedgerError",
    "LedgerValidationError",
    "NotFoundError",
    "consistency_failure",
]
