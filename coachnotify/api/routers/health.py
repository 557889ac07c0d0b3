"""Liveness endpoint for the load balancer and container runtime."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from coachnotify.api.dependencies import get_pipeline
from coachnotify.pipeline import NotificationPipeline

router = APIRouter()


@router.get("/healthz", summary="Liveness probe")
def health_check(pipeline: NotificationPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "pipeline_started": pipeline.started,
        "queued_deliveries": len(pipeline.queue),
    }
