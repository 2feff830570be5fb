"""Collaborators injected into the pipeline endpoints."""

from __future__ import annotations

from autogift_api.core.settings import get_settings
from autogift_api.services.pipeline import PipelineDependencies


async def get_pipeline_dependencies() -> PipelineDependencies:
    return PipelineDependencies.from_settings(get_settings())
