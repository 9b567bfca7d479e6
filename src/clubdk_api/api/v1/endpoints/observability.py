"""Observability endpoints for ledger telemetry."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from clubdk_api.api.dependencies.security import require_checkout_api_key
from clubdk_api.observability.loyalty import get_loyalty_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/loyalty",
    dependencies=[Depends(require_checkout_api_key)],
    summary="Loyalty ledger observability snapshot",
)
async def get_loyalty_snapshot() -> dict[str, object]:
    """Return accrual, redemption, rejection and consistency counters."""
    return get_loyalty_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} counter",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    dependencies=[Depends(require_checkout_api_key)],
    summary="Prometheus-formatted ledger metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_loyalty_store().snapshot()
    lines: list[str] = []
    lines += _format_metric(
        "clubdk_loyalty_accrual_entries_total", "Accrual ledger entries written", snapshot.accruals.get("entries", 0)
    )
    lines += _format_metric(
        "clubdk_loyalty_accrual_points_total", "Points credited by accruals", snapshot.accruals.get("points", 0)
    )
    lines += _format_metric(
        "clubdk_loyalty_redemptions_total", "Successful redemptions", snapshot.redemptions.get("total", 0)
    )
    for kind, count in sorted(snapshot.rejections.items()):
        lines += _format_metric(
            "clubdk_loyalty_rejections_total", "Rejected ledger operations", count, {"kind": kind}
        )
    lines += _format_metric(
        "clubdk_loyalty_consistency_errors_total",
        "Ledger invariant violations detected",
        snapshot.consistency_errors.get("total", 0),
    )
    for operation, totals in sorted(snapshot.bulk.items()):
        for outcome in ("succeeded", "skipped"):
            lines += _format_metric(
                "clubdk_order_bulk_items_total",
                "Orders processed by bulk actions",
                totals.get(outcome, 0),
                {"operation": operation, "outcome": outcome},
            )
    return PlainTextResponse("\n".join(lines) + "\n")
