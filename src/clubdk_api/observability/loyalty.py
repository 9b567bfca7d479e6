from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    accruals: Dict[str, int]
    redemptions: Dict[str, int]
    rejections: Dict[str, int]
    consistency_errors: Dict[str, int]
    bulk: Dict[str, Dict[str, int]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "accruals": dict(self.accruals),
            "redemptions": dict(self.redemptions),
            "rejections": dict(self.rejections),
            "consistencyErrors": dict(self.consistency_errors),
            "bulk": {key: dict(value) for key, value in self.bulk.items()},
        }


class LoyaltyObservabilityStore:
    """Collect ledger telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._accruals: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._rejections: Dict[str, int] = defaultdict(int)
        self._consistency: Dict[str, int] = defaultdict(int)
        self._bulk: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))

    def record_accrual(self, reason: str, points: int) -> None:
        with self._lock:
            self._accruals["entries"] += 1
            self._accruals["points"] += points
            self._accruals[f"reason:{reason}"] += 1

    def record_redemption(self, points: int) -> None:
        with self._lock:
            self._redemptions["total"] += 1
            self._redemptions["points"] += points

    def record_rejection(self, kind: str) -> None:
        with self._lock:
            self._rejections[kind] += 1

    def record_consistency_error(self, kind: str) -> None:
        with self._lock:
            self._consistency["total"] += 1
            self._consistency[f"kind:{kind}"] += 1

    def record_bulk_outcome(self, operation: str, *, succeeded: int, skipped: int) -> None:
        with self._lock:
            bucket = self._bulk[operation]
            bucket["runs"] += 1
            bucket["succeeded"] += succeeded
            bucket["skipped"] += skipped

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                accruals=dict(self._accruals),
                redemptions=dict(self._redemptions),
                rejections=dict(self._rejections),
                consistency_errors=dict(self._consistency),
                bulk={key: dict(value) for key, value in self._bulk.items()},
            )

    def reset(self) -> None:
        with self._lock:
            self._accruals.clear()
            self._redemptions.clear()
            self._rejections.clear()
            self._consistency.clear()
            self._bulk.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
