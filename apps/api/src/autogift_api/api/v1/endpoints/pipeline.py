"""Endpoints that trigger pipeline runs on demand."""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.api.dependencies.pipeline import get_pipeline_dependencies
from autogift_api.api.dependencies.security import require_pipeline_api_key
from autogift_api.db.session import get_session
from autogift_api.jobs.pipeline import (
    JOB_ADDRESS_EXPIRY,
    JOB_AUTO_GIFTS,
    JOB_PAYMENT_RETRIES,
    JOB_SCHEDULED_ORDERS,
    execute_job,
)
from autogift_api.observability.scheduler import get_scheduler_store
from autogift_api.services.pipeline import PipelineDependencies

router = APIRouter(prefix="/pipeline", tags=["Pipeline"], dependencies=[Depends(require_pipeline_api_key)])


class PipelineRunRequest(BaseModel):
    """Optional run input; a simulated date replaces today for every date comparison."""

    simulated_date: date | None = Field(None, alias="simulatedDate")

    class Config:
        populate_by_name = True


async def _run(
    job: str,
    payload: PipelineRunRequest | None,
    session: AsyncSession,
    dependencies: PipelineDependencies,
) -> dict[str, Any]:
    simulated_date = payload.simulated_date if payload else None
    try:
        return await execute_job(
            session,
            job,
            simulated_date=simulated_date,
            triggered_by="api",
            dependencies=dependencies,
        )
    except Exception as exc:
        logger.exception("Pipeline run request failed", job=job)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Pipeline run failed: {exc}",
        ) from exc


@router.post("/auto-gifts/run", summary="Run the auto-gift orchestrator")
async def run_auto_gifts(
    payload: PipelineRunRequest | None = Body(None),
    session: AsyncSession = Depends(get_session),
    dependencies: PipelineDependencies = Depends(get_pipeline_dependencies),
) -> dict[str, Any]:
    return await _run(JOB_AUTO_GIFTS, payload, session, dependencies)


@router.post("/scheduled-orders/run", summary="Run the scheduled order processor")
async def run_scheduled_orders(
    payload: PipelineRunRequest | None = Body(None),
    session: AsyncSession = Depends(get_session),
    dependencies: PipelineDependencies = Depends(get_pipeline_dependencies),
) -> dict[str, Any]:
    return await _run(JOB_SCHEDULED_ORDERS, payload, session, dependencies)


@router.post("/payment-retries/run", summary="Retry declined gift payments that are due")
async def run_payment_retries(
    payload: PipelineRunRequest | None = Body(None),
    session: AsyncSession = Depends(get_session),
    dependencies: PipelineDependencies = Depends(get_pipeline_dependencies),
) -> dict[str, Any]:
    return await _run(JOB_PAYMENT_RETRIES, payload, session, dependencies)


@router.post("/address-requests/expire", summary="Expire overdue address collection tokens")
async def expire_address_requests(
    payload: PipelineRunRequest | None = Body(None),
    session: AsyncSession = Depends(get_session),
    dependencies: PipelineDependencies = Depends(get_pipeline_dependencies),
) -> dict[str, Any]:
    return await _run(JOB_ADDRESS_EXPIRY, payload, session, dependencies)


@router.get("/scheduler", summary="Pipeline scheduler health")
async def scheduler_health(request: Request) -> dict[str, object]:
    scheduler = getattr(request.app.state, "pipeline_scheduler", None)
    if scheduler is not None:
        return scheduler.health()
    snapshot = get_scheduler_store().snapshot()
    return {
        "running": False,
        "configured_jobs": 0,
        "failing_jobs": snapshot.failing_jobs,
        "totals": snapshot.totals,
        "jobs": [],
    }
