"""Provider event schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from coachnotify.models.inbound_event import EventStatus


class ProviderEventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    obj: Dict[str, Any] = Field(default_factory=dict, alias="object")
    previous_attributes: Optional[Dict[str, Any]] = None


class ProviderEvent(BaseModel):
    """Envelope of a provider webhook as parsed from the raw request body."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, max_length=255)
    type: str = Field(..., min_length=1, max_length=128)
    created: Optional[int] = None
    livemode: bool = False
    api_version: Optional[str] = Field(default=None, max_length=64)
    data: ProviderEventData = Field(default_factory=ProviderEventData)


class InboundEventResponse(BaseModel):
    """Operator view of a stored inbound event."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: str
    event_type: str
    status: EventStatus
    retry_count: int
    last_error: Optional[str]
    warning: Optional[str]
    livemode: bool
    api_version: Optional[str]
    payload: Dict[str, Any]
    received_at: datetime
    last_attempt_at: Optional[datetime]
    processed_at: Optional[datetime]


class IngestResponse(BaseModel):
    received: bool
    duplicate: bool = False
    event_id: Optional[str] = None
    status: Optional[EventStatus] = None


class WebhookSummary(BaseModel):
    status: str = "ok"
    environment: str
    supported_events: List[str]
    max_payload_bytes: int
    signature_header: str
    secret_configured: bool
    retry_ceiling: int
