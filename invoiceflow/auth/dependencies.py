"""
Composed FastAPI Dependencies

Route handlers import their request context from here: the pipeline
and settings wired onto app.state by the lifespan.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from invoiceflow.core.config import Settings
from invoiceflow.services.pipeline import BatchPipeline


def get_pipeline(request: Request) -> BatchPipeline:
    return request.app.state.pipeline


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


Pipeline    = Annotated[BatchPipeline, Depends(get_pipeline)]
AppSettings = Annotated[Settings,      Depends(get_app_settings)]
