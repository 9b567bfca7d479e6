"""Tier resolution over trailing spend."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Protocol, Sequence, TypeVar

DEFAULT_POINTS_MULTIPLIER = 1.0


class TierBand(Protocol):
    name: Any
    min_spend: Any
    max_spend: Any
    points_multiplier: Any


T = TypeVar("T", bound=TierBand)


@dataclass(slots=True)
class TierProgress:
    """Read model behind the "how much to the next tier" card."""

    spend: Decimal
    current: Optional[TierBand]
    next_tier: Optional[TierBand]
    amount_to_next: Decimal
    progress_percent: float


def _as_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def sort_tiers(tiers: Sequence[T]) -> list[T]:
    return sorted(tiers, key=lambda tier: _as_decimal(tier.min_spend))


def resolve_tier(tiers: Sequence[T], spend: Decimal | float | int) -> Optional[T]:
    """Return the last tier whose ``min_spend`` is at or below ``spend``.

    ``max_spend`` is not consulted; a spend above every band lands in the highest tier.
    """

    amount = _as_decimal(spend)
    resolved: Optional[T] = None
    for tier in sort_tiers(tiers):
        if _as_decimal(tier.min_spend) <= amount:
            resolved = tier
        else:
            break
    return resolved


def multiplier_for(tier: Optional[TierBand]) -> float:
    if tier is None or tier.points_multiplier is None:
        return DEFAULT_POINTS_MULTIPLIER
    return float(tier.points_multiplier)


def tier_progress(tiers: Sequence[T], spend: Decimal | float | int) -> TierProgress:
    amount = _as_decimal(spend)
    ordered = sort_tiers(tiers)
    current = resolve_tier(ordered, amount)
    next_tier = next((tier for tier in ordered if _as_decimal(tier.min_spend) > amount), None)

    if next_tier is None:
        return TierProgress(
            spend=amount,
            current=current,
            next_tier=None,
            amount_to_next=Decimal("0"),
            progress_percent=100.0,
        )

    # Display target is the current band's exclusive ceiling when one is configured.
    target = _as_decimal(next_tier.min_spend)
    if current is not None and current.max_spend is not None:
        target = min(target, _as_decimal(current.max_spend))
    floor = _as_decimal(current.min_spend) if current is not None else Decimal("0")
    remaining = max(target - amount, Decimal("0"))
    span = target - floor
    percent = float((amount - floor) / span * 100) if span > 0 else 100.0
    return TierProgress(
        spend=amount,
        current=current,
        next_tier=next_tier,
        amount_to_next=remaining.quantize(Decimal("0.01")),
        progress_percent=round(max(0.0, min(percent, 100.0)), 2),
    )


__all__ = [
    "DEFAULT_POINTS_MULTIPLIER",
    "TierBand",
    "TierProgress",
    "multiplier_for",
    "resolve_tier",
    "sort_tiers",
    "tier_progress",
]
