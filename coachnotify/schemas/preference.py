"""User notification preference schemas."""

from __future__ import annotations

import re
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coachnotify.models.notification import DeliveryFrequency, NotificationCategory

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def default_categories() -> Dict[str, bool]:
    return {category.value: category is not NotificationCategory.MARKETING for category in NotificationCategory}


class QuietHours(BaseModel):
    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "UTC"

    @field_validator("start", "end")
    @classmethod
    def _validate_clock_time(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError("expected HH:MM in 24-hour time")
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        if value == "UTC":
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{value}'") from exc
        return value


class ContactDetails(BaseModel):
    """Addresses the channel adapters deliver to."""

    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=32)
    push_tokens: List[str] = Field(default_factory=list)


class ChannelFlags(BaseModel):
    email: bool = True
    push: bool = True
    sms: bool = False
    in_app: bool = True


class NotificationPreferences(BaseModel):
    """Detached snapshot of a user's preferences, safe to cache and share across threads."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    channels: ChannelFlags = Field(default_factory=ChannelFlags)
    categories: Dict[str, bool] = Field(default_factory=default_categories)
    frequency: DeliveryFrequency = DeliveryFrequency.IMMEDIATE
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    do_not_disturb: bool = False
    contact: ContactDetails = Field(default_factory=ContactDetails)


class PreferenceUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    channels: Optional[ChannelFlags] = None
    categories: Optional[Dict[NotificationCategory, bool]] = None
    frequency: Optional[DeliveryFrequency] = None
    quiet_hours: Optional[QuietHours] = None
    do_not_disturb: Optional[bool] = None
    contact: Optional[ContactDetails] = None
