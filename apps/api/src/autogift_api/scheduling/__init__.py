"""Cron scheduling for the gift pipeline."""

from .config import JobDefinition, ScheduleConfig, load_job_definitions
from .runner import PipelineJobScheduler

__all__ = ["JobDefinition", "PipelineJobScheduler", "ScheduleConfig", "load_job_definitions"]
