"""Operator queries over stored inbound events."""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from coachnotify.events_engine.errors import EventNotFoundError
from coachnotify.models.inbound_event import EventStatus, InboundEvent


class EventService:
    def __init__(self, session: Session) -> None:
        self._session = session

    def list_events(
        self,
        *,
        status: Optional[EventStatus] = None,
        event_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[InboundEvent]:
        stmt = select(InboundEvent).order_by(InboundEvent.received_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(InboundEvent.status == status)
        if event_type:
            stmt = stmt.where(InboundEvent.event_type == event_type)
        return list(self._session.scalars(stmt))

    def get_event(self, external_id: str) -> InboundEvent:
        record = self._session.scalar(select(InboundEvent).where(InboundEvent.external_id == external_id))
        if not record:
            raise EventNotFoundError(f"Event {external_id} not found")
        return record
