"""
Dependency helpers for the FastAPI app.
"""

from __future__ import annotations

from core.services import pipeline as pipeline_module
from core.services.pipeline import Pipeline


def get_pipeline() -> Pipeline:
    return pipeline_module.get_pipeline()
