"""Pipeline jobs shared by the scheduler, the operator CLI and the HTTP API."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from autogift_api.domain.calendar import resolve_now, resolve_today
from autogift_api.models.pipeline_run import PipelineRun
from autogift_api.observability.tracing import get_tracer
from autogift_api.services.pipeline import PipelineDependencies, PipelineServices
from autogift_api.services.run_summary import RunSummary

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]
Runner = Callable[[PipelineServices, date | None], Awaitable[RunSummary]]

JOB_AUTO_GIFTS = "auto_gifts"
JOB_SCHEDULED_ORDERS = "scheduled_orders"
JOB_PAYMENT_RETRIES = "payment_retries"
JOB_ADDRESS_EXPIRY = "address_expiry"


def coerce_simulated_date(value: date | str | None) -> date | None:
    if value is None or isinstance(value, date):
        return value
    text = value.strip()
    if not text:
        return None
    return date.fromisoformat(text)


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    return maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session


async def execute_job(
    session: AsyncSession,
    job: str,
    *,
    simulated_date: date | None = None,
    triggered_by: str = "scheduler",
    dependencies: PipelineDependencies | None = None,
) -> Dict[str, Any]:
    """Run one pipeline job inside ``session`` and persist a ``PipelineRun`` for it.

    The run row is committed before the component starts so that it survives
    component rollbacks. Component errors mark the run failed and propagate.
    """

    runner = JOB_RUNNERS.get(job)
    if runner is None:
        raise ValueError(f"Unknown pipeline job: {job}")

    deps = dependencies or PipelineDependencies.from_settings()
    simulated = simulated_date is not None
    run = PipelineRun(
        job=job,
        triggered_by=triggered_by,
        reference_date=resolve_today(simulated_date),
        simulated=simulated,
        status="running",
    )
    session.add(run)
    await session.commit()
    run_id: UUID = run.id

    services = PipelineServices(session, deps, simulated=simulated)
    try:
        with get_tracer().start_as_current_span(f"pipeline.{job}") as span:
            span.set_attribute("pipeline.run_id", str(run_id))
            span.set_attribute("pipeline.simulated", simulated)
            summary = await runner(services, simulated_date)
    except Exception as exc:
        await session.rollback()
        failed = await session.get(PipelineRun, run_id)
        if failed is not None:
            failed.status = "failed"
            failed.error_message = str(exc)
            failed.completed_at = datetime.now(timezone.utc)
            await session.commit()
        logger.exception("Pipeline job failed", job=job, run_id=str(run_id), triggered_by=triggered_by)
        raise

    payload = summary.as_dict()
    finished = await session.get(PipelineRun, run_id)
    if finished is not None:
        finished.status = "completed"
        finished.processed_count = summary.processed
        finished.error_count = summary.failed
        finished.summary = payload
        finished.completed_at = datetime.now(timezone.utc)
        await session.commit()
    logger.info(
        "Pipeline job completed",
        job=job,
        run_id=str(run_id),
        triggered_by=triggered_by,
        simulated=simulated,
        processed=summary.processed,
        failed=summary.failed,
    )
    payload["runId"] = str(run_id)
    return payload


async def _run_auto_gifts(services: PipelineServices, simulated_date: date | None) -> RunSummary:
    return await services.orchestrator().run(simulated_date=simulated_date)


async def _run_scheduled_orders(services: PipelineServices, simulated_date: date | None) -> RunSummary:
    return await services.scheduled_orders().run(simulated_date=simulated_date)


async def _run_payment_retries(services: PipelineServices, simulated_date: date | None) -> RunSummary:
    return await services.payment_retries().run(simulated_date=simulated_date)


async def _run_address_expiry(services: PipelineServices, simulated_date: date | None) -> RunSummary:
    return await services.address_collection().expire_overdue(
        now=resolve_now(simulated_date),
        simulated=simulated_date is not None,
    )


JOB_RUNNERS: Dict[str, Runner] = {
    JOB_AUTO_GIFTS: _run_auto_gifts,
    JOB_SCHEDULED_ORDERS: _run_scheduled_orders,
    JOB_PAYMENT_RETRIES: _run_payment_retries,
    JOB_ADDRESS_EXPIRY: _run_address_expiry,
}


async def _run_with_factory(
    job: str,
    *,
    session_factory: SessionFactory,
    simulated_date: date | str | None,
    triggered_by: str,
    dependencies: PipelineDependencies | None,
) -> Dict[str, Any]:
    session = await _open_session(session_factory)
    async with session as managed_session:
        return await execute_job(
            managed_session,
            job,
            simulated_date=coerce_simulated_date(simulated_date),
            triggered_by=triggered_by,
            dependencies=dependencies,
        )


async def run_auto_gifts(
    *,
    session_factory: SessionFactory,
    simulated_date: date | str | None = None,
    triggered_by: str = "scheduler",
    dependencies: PipelineDependencies | None = None,
) -> Dict[str, Any]:
    """Send reminders and create checkouts for upcoming gift occasions."""

    return await _run_with_factory(
        JOB_AUTO_GIFTS,
        session_factory=session_factory,
        simulated_date=simulated_date,
        triggered_by=triggered_by,
        dependencies=dependencies,
    )


async def run_scheduled_orders(
    *,
    session_factory: SessionFactory,
    simulated_date: date | str | None = None,
    triggered_by: str = "scheduler",
    dependencies: PipelineDependencies | None = None,
) -> Dict[str, Any]:
    """Authorize, capture and submit held orders as their dates come due."""

    return await _run_with_factory(
        JOB_SCHEDULED_ORDERS,
        session_factory=session_factory,
        simulated_date=simulated_date,
        triggered_by=triggered_by,
        dependencies=dependencies,
    )


async def run_payment_retries(
    *,
    session_factory: SessionFactory,
    simulated_date: date | str | None = None,
    triggered_by: str = "scheduler",
    dependencies: PipelineDependencies | None = None,
) -> Dict[str, Any]:
    return await _run_with_factory(
        JOB_PAYMENT_RETRIES,
        session_factory=session_factory,
        simulated_date=simulated_date,
        triggered_by=triggered_by,
        dependencies=dependencies,
    )


async def expire_address_requests(
    *,
    session_factory: SessionFactory,
    simulated_date: date | str | None = None,
    triggered_by: str = "scheduler",
    dependencies: PipelineDependencies | None = None,
) -> Dict[str, Any]:
    return await _run_with_factory(
        JOB_ADDRESS_EXPIRY,
        session_factory=session_factory,
        simulated_date=simulated_date,
        triggered_by=triggered_by,
        dependencies=dependencies,
    )


__all__ = [
    "JOB_ADDRESS_EXPIRY",
    "JOB_AUTO_GIFTS",
    "JOB_PAYMENT_RETRIES",
    "JOB_RUNNERS",
    "JOB_SCHEDULED_ORDERS",
    "coerce_simulated_date",
    "execute_job",
    "expire_address_requests",
    "run_auto_gifts",
    "run_payment_retries",
    "run_scheduled_orders",
]
