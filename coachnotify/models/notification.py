"""Notification, delivery attempt, preference, and template models."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import Mapped, mapped_column

from coachnotify.models.base import Base, TimestampMixin
from coachnotify.models.types import GUID, JSONType, UTCDateTime


def _enum_column(enum_cls: type[Enum], name: str) -> SqlEnum:
    return SqlEnum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda x: [e.value for e in x],
    )


class NotificationCategory(str, Enum):
    SESSION_REMINDER = "session_reminder"
    SESSION_CONFIRMED = "session_confirmed"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_RESCHEDULED = "session_rescheduled"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_EXPIRING = "subscription_expiring"
    COACH_MESSAGE = "coach_message"
    SYSTEM_ALERT = "system_alert"
    SECURITY_ALERT = "security_alert"
    MARKETING = "marketing"
    WELCOME = "welcome"


class Channel(str, Enum):
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"
    IN_APP = "in_app"


# Canonical ordering used whenever a channel set is materialised.
CHANNEL_ORDER: tuple[Channel, ...] = (Channel.EMAIL, Channel.PUSH, Channel.SMS, Channel.IN_APP)


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXPIRED = "expired"


class DeliveryFrequency(str, Enum):
    IMMEDIATE = "immediate"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class AttemptReason(str, Enum):
    """Why a delivery attempt ended the way it did."""

    DELIVERED = "delivered"
    SUPPRESSED_QUIET_HOURS = "suppressed_quiet_hours"
    SUPPRESSED_DO_NOT_DISTURB = "suppressed_do_not_disturb"
    TRANSIENT_ERROR = "transient_error"
    TIMEOUT = "timeout"
    PERMANENT_ERROR = "permanent_error"
    EXPIRED = "expired"
    ABANDONED = "abandoned"


class Notification(TimestampMixin, Base):
    """A unit of user-facing communication and its lifecycle state."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_status_scheduled", "status", "scheduled_for"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    category: Mapped[NotificationCategory] = mapped_column(
        _enum_column(NotificationCategory, "notification_category"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(length=255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    priority: Mapped[NotificationPriority] = mapped_column(
        _enum_column(NotificationPriority, "notification_priority"),
        nullable=False,
        default=NotificationPriority.MEDIUM,
    )
    channels: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[NotificationStatus] = mapped_column(
        _enum_column(NotificationStatus, "notification_status"),
        nullable=False,
        default=NotificationStatus.PENDING,
    )
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(length=255), unique=True, nullable=True)
    template_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), nullable=True)

    @property
    def channel_set(self) -> List[Channel]:
        return [Channel(value) for value in self.channels]


class DeliveryAttempt(Base):
    """One try of one channel for one notification. Rows are never updated."""

    __tablename__ = "notification_delivery_attempts"
    __table_args__ = (Index("ix_delivery_attempts_notification_channel", "notification_id", "channel"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False
    )
    channel: Mapped[Channel] = mapped_column(_enum_column(Channel, "delivery_channel"), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[AttemptReason] = mapped_column(_enum_column(AttemptReason, "delivery_attempt_reason"), nullable=False)
    error: Mapped[Optional[str]] = mapped_column(String(length=1024), nullable=True)


class UserNotificationPreference(TimestampMixin, Base):
    """Per-user channel, category, and quiet-hours configuration."""

    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String(length=128), primary_key=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    push_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sms_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    in_app_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    categories: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    frequency: Mapped[DeliveryFrequency] = mapped_column(
        _enum_column(DeliveryFrequency, "delivery_frequency"),
        nullable=False,
        default=DeliveryFrequency.IMMEDIATE,
    )
    quiet_hours_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quiet_hours_start: Mapped[str] = mapped_column(String(length=5), nullable=False, default="22:00")
    quiet_hours_end: Mapped[str] = mapped_column(String(length=5), nullable=False, default="08:00")
    timezone: Mapped[str] = mapped_column(String(length=64), nullable=False, default="UTC")
    do_not_disturb: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    contact: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)


class NotificationTemplate(TimestampMixin, Base):
    """Reusable title/body text with ``{{ variable }}`` placeholders."""

    __tablename__ = "notification_templates"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(length=128), unique=True, nullable=False)
    category: Mapped[NotificationCategory] = mapped_column(
        _enum_column(NotificationCategory, "template_category"), nullable=False
    )
    subject_template: Mapped[str] = mapped_column(String(length=255), nullable=False)
    body_template: Mapped[str] = mapped_column(Text, nullable=False)
    channels: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    variables: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
