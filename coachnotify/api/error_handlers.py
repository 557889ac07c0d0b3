"""Exception handlers for the FastAPI app."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from coachnotify.events_engine.errors import EventNotFoundError, IngestError, PayloadTooLargeError
from coachnotify.notifications.engine import NoChannelsAvailableError
from coachnotify.notifications.service import NotificationNotFoundError
from coachnotify.notifications.templates import (
    TemplateConflictError,
    TemplateNotFoundError,
    TemplateRenderError,
)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # noqa: WPS430
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(PayloadTooLargeError)
    async def payload_too_large_handler(request: Request, exc: PayloadTooLargeError) -> JSONResponse:  # noqa: WPS430
        return JSONResponse(status_code=413, content={"detail": str(exc)})

    @app.exception_handler(IngestError)
    async def ingest_error_handler(request: Request, exc: IngestError) -> JSONResponse:  # noqa: WPS430
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(EventNotFoundError)
    async def event_not_found_handler(request: Request, exc: EventNotFoundError) -> JSONResponse:  # noqa: WPS430
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(NotificationNotFoundError)
    async def notification_not_found_handler(request: Request, exc: NotificationNotFoundError) -> JSONResponse:  # noqa: WPS430
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(NoChannelsAvailableError)
    async def no_channels_handler(request: Request, exc: NoChannelsAvailableError) -> JSONResponse:  # noqa: WPS430
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(TemplateNotFoundError)
    async def template_not_found_handler(request: Request, exc: TemplateNotFoundError) -> JSONResponse:  # noqa: WPS430
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(TemplateRenderError)
    async def template_render_handler(request: Request, exc: TemplateRenderError) -> JSONResponse:  # noqa: WPS430
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(TemplateConflictError)
    async def template_conflict_handler(request: Request, exc: TemplateConflictError) -> JSONResponse:  # noqa: WPS430
        return JSONResponse(status_code=409, content={"detail": str(exc)})
