"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from coachnotify.api.error_handlers import register_exception_handlers
from coachnotify.api.routers import get_api_router
from coachnotify.core.config import AppSettings, get_settings
from coachnotify.core.database import engine
from coachnotify.core.logging import configure_logging
from coachnotify.models import Base
from coachnotify.pipeline import NotificationPipeline, build_pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: D401
    """Create tables and run the background pipeline for the app's lifetime."""

    pipeline: NotificationPipeline = app.state.pipeline
    Base.metadata.create_all(bind=engine)
    if pipeline.settings.background_workers_enabled:
        pipeline.start()
    try:
        yield
    finally:
        pipeline.stop()


def create_app(settings: AppSettings | None = None, pipeline: NotificationPipeline | None = None) -> FastAPI:
    """Application factory."""

    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Coaching Marketplace Notifications",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline or build_pipeline(settings)

    register_exception_handlers(app)
    app.include_router(get_api_router())
    return app


app = create_app()
