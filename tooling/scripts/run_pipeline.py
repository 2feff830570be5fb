"""Run one gift pipeline job once.

Intended usage: manual operator runs, backfills and date simulation. A
simulated date replaces "today" for every date comparison the job makes.

Example:
    python tooling/scripts/run_pipeline.py auto_gifts --simulated-date 2025-12-18
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import date
from pathlib import Path
from typing import Any

from loguru import logger

JOBS = ("auto_gifts", "scheduled_orders", "payment_retries", "address_expiry")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute a gift pipeline job once")
    parser.add_argument("job", choices=JOBS, help="Pipeline job to run.")
    parser.add_argument(
        "--simulated-date",
        type=date.fromisoformat,
        default=None,
        help="Run as if today were this date (YYYY-MM-DD). Simulated runs are flagged in the event log.",
    )
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded on the pipeline run to describe the invocation source.",
    )
    return parser.parse_args(argv)


async def _run(job: str, simulated_date: date | None, trigger: str) -> dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from autogift_api.core.logging import configure_logging  # type: ignore import-position
    from autogift_api.core.settings import settings  # type: ignore import-position
    from autogift_api.db.session import async_session  # type: ignore import-position
    from autogift_api.jobs.pipeline import execute_job  # type: ignore import-position

    configure_logging(service_name="autogift-cli", environment=settings.environment, version="cli")
    async with async_session() as session:
        return await execute_job(session, job, simulated_date=simulated_date, triggered_by=trigger)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    summary = asyncio.run(_run(args.job, args.simulated_date, args.trigger))
    logger.success(
        "Pipeline job completed",
        job=args.job,
        trigger=args.trigger,
        counts=summary.get("counts", {}),
    )
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
