"""Loyalty job exports."""

from .reconciliation import reconcile_loyalty_state, run_ledger_reconciliation  # noqa: F401

__all__ = [
    "reconcile_loyalty_state",
    "run_ledger_reconciliation",
]
