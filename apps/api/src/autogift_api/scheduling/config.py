"""Load pipeline job schedules from TOML."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib


@dataclass(slots=True)
class JobDefinition:
    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]


def _number(payload: dict[str, Any], key: str, default: float, *, floor: float) -> float:
    value = payload.get(key, default)
    try:
        return max(float(value), floor)
    except (TypeError, ValueError):
        return default


def parse_schedule(data: dict[str, Any]) -> ScheduleConfig:
    """Build a ``ScheduleConfig`` from decoded TOML.

    Entries without a string ``task`` and ``cron`` are skipped.
    """

    jobs: list[JobDefinition] = []
    for key, payload in (data.get("jobs") or {}).items():
        if not isinstance(payload, dict):
            continue
        task = payload.get("task")
        cron = payload.get("cron")
        if not isinstance(task, str) or not isinstance(cron, str):
            continue
        kwargs = payload.get("kwargs")
        jobs.append(
            JobDefinition(
                id=str(payload.get("id") or key),
                task=task,
                cron=cron,
                kwargs=kwargs if isinstance(kwargs, dict) else {},
                max_attempts=int(_number(payload, "max_attempts", 1, floor=1)),
                base_backoff_seconds=_number(payload, "base_backoff_seconds", 5.0, floor=0.0),
                backoff_multiplier=_number(payload, "backoff_multiplier", 2.0, floor=1.0),
                max_backoff_seconds=_number(payload, "max_backoff_seconds", 60.0, floor=0.0),
                jitter_seconds=_number(payload, "jitter_seconds", 1.0, floor=0.0),
            )
        )
    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")
    return parse_schedule(tomllib.loads(config_path.read_text()))


__all__ = ["JobDefinition", "ScheduleConfig", "load_job_definitions", "parse_schedule"]
