"""APScheduler runtime for the gift pipeline jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from autogift_api.observability.scheduler import SchedulerObservabilityStore, get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]


def backoff_delay(job: JobDefinition, attempt: int) -> float:
    """Seconds to wait before attempt ``attempt + 1``."""

    delay = job.base_backoff_seconds * (job.backoff_multiplier ** (attempt - 1))
    if job.max_backoff_seconds:
        delay = min(delay, job.max_backoff_seconds)
    if job.jitter_seconds:
        delay += random.uniform(0, job.jitter_seconds)
    return max(delay, 0.0)


class PipelineJobScheduler:
    """Runs the configured pipeline jobs on cron triggers with retry and backoff."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        config_path: Path,
        observability: SchedulerObservabilityStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running = False
        self._observability = observability or get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.jobs:
            func = self._resolve_callable(job)
            trigger = CronTrigger.from_crontab(job.cron, timezone=timezone)
            scheduler.add_job(self.wrap(func, job), trigger=trigger, id=job.id, replace_existing=True)
            logger.info("Registered pipeline job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        self._is_running = True
        logger.info("Pipeline scheduler started", jobs=len(config.jobs))

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        self._is_running = False
        logger.info("Pipeline scheduler stopped")

    @staticmethod
    def _resolve_callable(job: JobDefinition) -> Callable[..., Awaitable[Any]]:
        module_name, _, attr = job.task.rpartition(".")
        if not module_name:
            raise ValueError(f"Invalid task path: {job.task}")
        func = getattr(import_module(module_name), attr, None)
        if func is None:
            raise AttributeError(f"Task {job.task} not found")
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Task {job.task} must be an async function")
        return func

    def wrap(self, func: Callable[..., Awaitable[Any]], job: JobDefinition) -> Callable[[], Awaitable[Any]]:
        """Return a coroutine function that runs ``func`` with the job's retry policy.

        A job that fails on every attempt is recorded and logged; the error does
        not propagate into APScheduler.
        """

        async def _runner() -> Any:
            self._observability.record_dispatch(job.id)
            started_at = time.perf_counter()
            attempts = max(job.max_attempts, 1)

            for attempt in range(1, attempts + 1):
                try:
                    result = await func(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    error = str(exc)
                    self._observability.record_attempt_failure(job.id, attempts=attempt, error=error)
                    if attempt >= attempts:
                        self._observability.record_run_failure(job.id, attempts=attempt, error=error)
                        logger.exception("Pipeline job failed after retries", job_id=job.id, attempts=attempt)
                        return None

                    delay = backoff_delay(job, attempt)
                    self._observability.record_retry(job.id)
                    logger.warning("Pipeline job retrying", job_id=job.id, attempt=attempt + 1, delay_seconds=delay)
                    if delay:
                        await asyncio.sleep(delay)
                    continue

                runtime = time.perf_counter() - started_at
                self._observability.record_success(job.id, attempts=attempt)
                logger.info("Pipeline job completed", job_id=job.id, attempts=attempt, runtime_seconds=runtime)
                return result
            return None

        return _runner

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs: list[dict[str, object]] = []
        for job in self._config.jobs if self._config else []:
            metrics = snapshot.jobs.get(job.id)
            jobs.append(
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "max_attempts": job.max_attempts,
                    "metrics": metrics.as_dict() if metrics else None,
                }
            )
        return {
            "running": self._is_running,
            "configured_jobs": len(jobs),
            "failing_jobs": snapshot.failing_jobs,
            "totals": snapshot.totals,
            "jobs": jobs,
        }


__all__ = ["PipelineJobScheduler", "backoff_delay"]
