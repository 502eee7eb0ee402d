"""Catalog classification runs."""
from src.services.pipeline.run import (
    PipelineRunResult,
    PipelineRunner,
    get_run,
    latest_completed_run,
)

__all__ = [
    "PipelineRunResult",
    "PipelineRunner",
    "get_run",
    "latest_completed_run",
]
