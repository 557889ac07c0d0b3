"""Notification request, response, and real-time message schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coachnotify.core.clock import ensure_utc
from coachnotify.models.notification import (
    AttemptReason,
    Channel,
    NotificationCategory,
    NotificationPriority,
    NotificationStatus,
)


class NotificationRequest(BaseModel):
    """A request to notify one user, submitted by handlers or internal callers."""

    user_id: str = Field(..., min_length=1, max_length=128)
    category: NotificationCategory
    title: str = Field(default="", max_length=255)
    body: str = Field(default="")
    data: Dict[str, Any] = Field(default_factory=dict)
    channels: Optional[List[Channel]] = None
    priority: NotificationPriority = NotificationPriority.MEDIUM
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    template_id: Optional[UUID] = None
    template_variables: Dict[str, Any] = Field(default_factory=dict)
    dedupe_key: Optional[str] = Field(default=None, max_length=255)

    @field_validator("scheduled_for", "expires_at")
    @classmethod
    def _ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class DeliveryAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    channel: Channel
    attempt_number: int
    attempted_at: datetime
    success: bool
    reason: AttemptReason
    error: Optional[str]


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    category: NotificationCategory
    title: str
    body: str
    data: Dict[str, Any]
    priority: NotificationPriority
    channels: List[Channel]
    status: NotificationStatus
    scheduled_for: Optional[datetime]
    expires_at: Optional[datetime]
    delivered_at: Optional[datetime]
    read_at: Optional[datetime]
    clicked_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class NotificationDetail(NotificationResponse):
    attempts: List[DeliveryAttemptResponse] = Field(default_factory=list)


class NotificationPage(BaseModel):
    items: List[NotificationResponse]
    total: int
    limit: int
    offset: int


class BulkNotificationRequest(BaseModel):
    notifications: List[NotificationRequest] = Field(..., min_length=1, max_length=1000)


class BulkFailure(BaseModel):
    index: int
    user_id: str
    error: str


class BulkNotificationResponse(BaseModel):
    created: List[UUID]
    failed: List[BulkFailure]


class MarkAllReadResponse(BaseModel):
    updated: int
    failed: List[UUID] = Field(default_factory=list)


class ChannelStats(BaseModel):
    attempts: int = 0
    delivered: int = 0
    suppressed: int = 0
    failed: int = 0


class NotificationStats(BaseModel):
    total: int
    total_sent: int
    total_delivered: int
    total_failed: int
    total_read: int
    total_clicked: int
    delivery_rate: float
    open_rate: float
    click_rate: float
    by_channel: Dict[str, ChannelStats]
    by_category: Dict[str, int]


class RealtimeMessage(BaseModel):
    """Frame pushed to live subscribers."""

    type: str
    data: Any
