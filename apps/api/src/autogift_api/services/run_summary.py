"""Per-invocation result summaries returned by every pipeline component."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any


@dataclass
class RunSummary:
    component: str
    reference_date: date
    simulated: bool
    config: dict[str, Any] = field(default_factory=dict)
    counts: dict[str, int] = field(default_factory=dict)
    details: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def bump(self, bucket: str, amount: int = 1) -> None:
        self.counts[bucket] = self.counts.get(bucket, 0) + amount

    def record(self, bucket: str, **detail: Any) -> None:
        self.bump(bucket)
        if detail:
            self.details.setdefault(bucket, []).append(
                {key: _jsonable(value) for key, value in detail.items()}
            )

    def fail(self, *, entity_id: Any, stage: str, error: str, **extra: Any) -> None:
        self.record("failed", id=entity_id, stage=stage, error=error, **extra)

    @property
    def processed(self) -> int:
        return sum(count for bucket, count in self.counts.items() if bucket != "failed")

    @property
    def failed(self) -> int:
        return self.counts.get("failed", 0)

    def as_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "referenceDate": self.reference_date.isoformat(),
            "simulated": self.simulated,
            "counts": dict(self.counts),
            "details": {bucket: list(entries) for bucket, entries in self.details.items()},
            "config": dict(self.config),
        }


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


__all__ = ["RunSummary"]
