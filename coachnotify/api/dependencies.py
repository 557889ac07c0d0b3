"""Dependency injection helpers for FastAPI routes."""

from __future__ import annotations

from typing import Iterator

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from coachnotify.core.database import get_session
from coachnotify.events_engine.service import EventService
from coachnotify.notifications.service import NotificationService
from coachnotify.notifications.templates import TemplateService
from coachnotify.pipeline import NotificationPipeline


def get_pipeline(request: Request) -> NotificationPipeline:
    return request.app.state.pipeline


def get_db_session(pipeline: NotificationPipeline = Depends(get_pipeline)) -> Iterator[Session]:
    yield from get_session(pipeline.session_factory)


def get_current_user_id(x_user_id: str = Header(..., min_length=1, max_length=128)) -> str:
    """The authenticated user, as asserted by the upstream gateway."""

    return x_user_id


def get_event_service(session: Session = Depends(get_db_session)) -> EventService:
    return EventService(session)


def get_notification_service(
    session: Session = Depends(get_db_session),
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> NotificationService:
    return NotificationService(session, clock=pipeline.clock)


def get_template_service(session: Session = Depends(get_db_session)) -> TemplateService:
    return TemplateService(session)
