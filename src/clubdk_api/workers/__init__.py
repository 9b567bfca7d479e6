"""Background workers executed alongside the API process."""

from .ledger_reconciliation import LedgerReconciliationWorker

__all__ = ["LedgerReconciliationWorker"]
