"""SQLAlchemy ORM models for the coachnotify service."""

from coachnotify.models.base import Base  # noqa: F401
from coachnotify.models.billing import (  # noqa: F401
    CoachingSession,
    Invoice,
    PaymentCustomer,
    PaymentIntent,
    PaymentMethod,
    RevenueRecord,
    Subscription,
)
from coachnotify.models.inbound_event import EventStatus, InboundEvent  # noqa: F401
from coachnotify.models.notification import (  # noqa: F401
    DeliveryAttempt,
    Notification,
    NotificationTemplate,
    UserNotificationPreference,
)
