from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clubdk_api.db.session import get_session
from clubdk_api.observability.loyalty import get_loyalty_store


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(session: AsyncSession = Depends(get_session)) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as error:
        status = "error"
        components["database"] = ComponentStatus(
            status="error",
            detail=f"Database unreachable ({error.__class__.__name__})",
            last_error_at=datetime.now(timezone.utc).isoformat(),
        )

    consistency_errors = get_loyalty_store().snapshot().consistency_errors.get("total", 0)
    if consistency_errors:
        components["ledger"] = ComponentStatus(
            status="degraded",
            detail=f"{consistency_errors} ledger consistency errors recorded since start",
        )
        if status == "ready":
            status = "degraded"
    else:
        components["ledger"] = ComponentStatus(status="ready")

    return ReadinessPayload(status=status, components=components)
