"""Notification template schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from coachnotify.models.notification import Channel, NotificationCategory


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    category: NotificationCategory
    subject_template: str = Field(..., min_length=1, max_length=255)
    body_template: str = Field(..., min_length=1)
    channels: List[Channel] = Field(default_factory=list)


class TemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    category: NotificationCategory
    subject_template: str
    body_template: str
    channels: List[Channel]
    variables: List[str]
    is_active: bool
    created_at: datetime
