"""Provider events recorded by the inbound gateway."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import Mapped, mapped_column

from coachnotify.models.base import Base, TimestampMixin
from coachnotify.models.types import GUID, JSONType, UTCDateTime


class EventStatus(str, Enum):
    """Processing outcome of an inbound event."""

    UNPROCESSED = "unprocessed"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class InboundEvent(TimestampMixin, Base):
    """One provider-originated occurrence, keyed by the provider's event id.

    The unique ``external_id`` is what makes ingestion idempotent: the row is
    inserted before any handler runs and a second delivery of the same id
    finds it already present.
    """

    __tablename__ = "inbound_events"
    __table_args__ = (
        Index("ix_inbound_events_status", "status"),
        Index("ix_inbound_events_event_type", "event_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(length=128), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    signature: Mapped[Optional[str]] = mapped_column(String(length=1024), nullable=True)
    api_version: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[EventStatus] = mapped_column(
        SqlEnum(
            EventStatus,
            name="inbound_event_status",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=EventStatus.UNPROCESSED,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    warning: Mapped[Optional[str]] = mapped_column(String(length=1024), nullable=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
