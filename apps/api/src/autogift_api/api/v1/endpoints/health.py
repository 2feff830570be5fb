from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.core.settings import get_settings
from autogift_api.db.session import get_session
from autogift_api.observability.scheduler import get_scheduler_store

router = APIRouter()

ComponentState = Literal["ready", "starting", "disabled", "error"]


class ComponentStatus(BaseModel):
    status: ComponentState
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    scheduler = getattr(request.app.state, "pipeline_scheduler", None)
    if get_settings().pipeline_scheduler_enabled and scheduler is not None:
        running = bool(getattr(scheduler, "is_running", False))
        failing = get_scheduler_store().snapshot().failing_jobs
        if failing:
            components["pipeline_scheduler"] = ComponentStatus(
                status="error",
                detail=f"Jobs failing: {', '.join(failing)}",
            )
            status = "error"
        elif not running:
            components["pipeline_scheduler"] = ComponentStatus(status="starting", detail="Pipeline scheduler not running")
            status = "degraded" if status != "error" else status
        else:
            components["pipeline_scheduler"] = ComponentStatus(status="ready")
    else:
        components["pipeline_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Pipeline scheduler disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
