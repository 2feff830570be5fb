"""In-process counters behind the pipeline scheduler health endpoints."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


@dataclass
class JobMetrics:
    job_id: str
    runs: int = 0
    successes: int = 0
    run_failures: int = 0
    attempt_failures: int = 0
    retries: int = 0
    consecutive_failures: int = 0
    last_attempts: int = 0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None

    @property
    def totals(self) -> Dict[str, int]:
        return {
            "runs": self.runs,
            "success": self.successes,
            "run_failures": self.run_failures,
            "attempt_failures": self.attempt_failures,
            "retries": self.retries,
            "consecutive_failures": self.consecutive_failures,
        }

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "last_attempts": self.last_attempts,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error": self.last_error,
        }


@dataclass
class SchedulerSnapshot:
    jobs: Dict[str, JobMetrics]

    @property
    def failing_jobs(self) -> list[str]:
        return [job_id for job_id, job in self.jobs.items() if job.consecutive_failures > 0]

    @property
    def totals(self) -> Dict[str, int]:
        keys = ("runs", "success", "run_failures", "attempt_failures", "retries")
        return {key: sum(job.totals[key] for job in self.jobs.values()) for key in keys}


class SchedulerObservabilityStore:
    """Thread-safe per-job counters: dispatches, retries, failures."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobMetrics] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def _metrics(self, job_id: str) -> JobMetrics:
        return self._jobs.setdefault(job_id, JobMetrics(job_id=job_id))

    def record_dispatch(self, job_id: str) -> None:
        with self._lock:
            metrics = self._metrics(job_id)
            metrics.runs += 1
            metrics.last_started_at = datetime.now(timezone.utc)

    def record_attempt_failure(self, job_id: str, *, attempts: int, error: str) -> None:
        with self._lock:
            metrics = self._metrics(job_id)
            metrics.attempt_failures += 1
            metrics.last_attempts = attempts
            metrics.last_error = error

    def record_retry(self, job_id: str) -> None:
        with self._lock:
            self._metrics(job_id).retries += 1

    def record_success(self, job_id: str, *, attempts: int) -> None:
        with self._lock:
            metrics = self._metrics(job_id)
            metrics.successes += 1
            metrics.consecutive_failures = 0
            metrics.last_attempts = attempts
            metrics.last_success_at = datetime.now(timezone.utc)
            metrics.last_error = None

    def record_run_failure(self, job_id: str, *, attempts: int, error: str) -> None:
        with self._lock:
            metrics = self._metrics(job_id)
            metrics.run_failures += 1
            metrics.consecutive_failures += 1
            metrics.last_attempts = attempts
            metrics.last_error = error

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            return SchedulerSnapshot(jobs={job_id: replace(metrics) for job_id, metrics in self._jobs.items()})


_SCHEDULER_STORE = SchedulerObservabilityStore()


def get_scheduler_store() -> SchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = [
    "JobMetrics",
    "SchedulerObservabilityStore",
    "SchedulerSnapshot",
    "get_scheduler_store",
]
