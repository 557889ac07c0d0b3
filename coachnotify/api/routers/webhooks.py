"""Provider webhook endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from coachnotify.api.dependencies import get_pipeline
from coachnotify.events_engine.errors import PayloadTooLargeError
from coachnotify.pipeline import NotificationPipeline
from coachnotify.schemas.event import IngestResponse, WebhookSummary

router = APIRouter()


@router.post(
    "/provider",
    response_model=IngestResponse,
    responses={400: {"description": "Malformed or unauthenticated"}, 413: {"description": "Payload too large"}},
)
async def receive_provider_event(
    request: Request,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> JSONResponse:
    settings = pipeline.settings
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.max_payload_bytes:
        raise PayloadTooLargeError(
            f"Payload of {declared} bytes exceeds limit of {settings.max_payload_bytes} bytes"
        )

    body = await request.body()
    proof = request.headers.get(settings.webhook_signature_header)
    result = await run_in_threadpool(pipeline.gateway.ingest, body, proof)

    response = IngestResponse(
        received=result.accepted,
        duplicate=result.duplicate,
        event_id=result.external_id,
        status=result.status,
    )
    # A 5xx tells the provider to redeliver later.
    return JSONResponse(status_code=200 if result.accepted else 500, content=response.model_dump(mode="json"))


@router.get("/provider", response_model=WebhookSummary)
def webhook_summary(pipeline: NotificationPipeline = Depends(get_pipeline)) -> WebhookSummary:
    settings = pipeline.settings
    return WebhookSummary(
        environment=settings.environment,
        supported_events=pipeline.gateway.summary_event_types(),
        max_payload_bytes=settings.max_payload_bytes,
        signature_header=settings.webhook_signature_header,
        secret_configured=pipeline.verifier.configured,
        retry_ceiling=settings.event_retry_ceiling,
    )
