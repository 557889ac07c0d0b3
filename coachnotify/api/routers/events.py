"""Operator endpoints over stored provider events."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from coachnotify.api.dependencies import get_event_service, get_pipeline
from coachnotify.core.database import session_scope
from coachnotify.events_engine.service import EventService
from coachnotify.models.inbound_event import EventStatus
from coachnotify.pipeline import NotificationPipeline
from coachnotify.schemas.event import InboundEventResponse

router = APIRouter()


@router.get(
    "",
    response_model=List[InboundEventResponse],
)
def list_events(
    status: Optional[EventStatus] = Query(default=None),
    event_type: Optional[str] = Query(default=None, max_length=128),
    limit: int = Query(default=50, ge=1, le=200),
    service: EventService = Depends(get_event_service),
) -> List[InboundEventResponse]:
    records = service.list_events(status=status, event_type=event_type, limit=limit)
    return [InboundEventResponse.model_validate(record, from_attributes=True) for record in records]


@router.get(
    "/{external_id}",
    response_model=InboundEventResponse,
)
def get_event(
    external_id: str,
    service: EventService = Depends(get_event_service),
) -> InboundEventResponse:
    record = service.get_event(external_id)
    return InboundEventResponse.model_validate(record, from_attributes=True)


@router.post(
    "/{external_id}/reprocess",
    response_model=InboundEventResponse,
)
def reprocess_event(
    external_id: str,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> InboundEventResponse:
    pipeline.gateway.reprocess(external_id)
    with session_scope(pipeline.session_factory) as session:
        record = EventService(session).get_event(external_id)
        return InboundEventResponse.model_validate(record, from_attributes=True)
