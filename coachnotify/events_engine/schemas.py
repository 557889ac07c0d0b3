"""Event types and the in-process event representation handed to handlers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from coachnotify.models.inbound_event import InboundEvent


class EventType(str, Enum):
    """Provider event types the pipeline understands.

    ``UNKNOWN`` is the explicit arm for everything else; every other member
    must have a handler route (enforced by ``EventRouter``).
    """

    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_DELETED = "customer.deleted"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    PAYMENT_METHOD_DETACHED = "payment_method.detached"
    INVOICE_CREATED = "invoice.created"
    INVOICE_FINALIZED = "invoice.finalized"
    INVOICE_PAID = "invoice.paid"
    INVOICE_VOIDED = "invoice.voided"
    UNKNOWN = "unknown"

    @classmethod
    def from_raw(cls, value: str) -> "EventType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @classmethod
    def supported(cls) -> List["EventType"]:
        return [member for member in cls if member is not cls.UNKNOWN]


@dataclass(frozen=True)
class StoredEvent:
    """Detached copy of an ``InboundEvent`` row, safe to pass outside a session."""

    id: uuid.UUID
    external_id: str
    event_type: EventType
    raw_type: str
    payload: Dict[str, Any]
    received_at: datetime
    retry_count: int = 0

    @property
    def obj(self) -> Dict[str, Any]:
        """The provider object the event is about (``data.object``)."""

        return (self.payload.get("data") or {}).get("object") or {}

    @property
    def created(self) -> Optional[int]:
        return self.payload.get("created")

    @classmethod
    def from_record(cls, record: InboundEvent) -> "StoredEvent":
        return cls(
            id=record.id,
            external_id=record.external_id,
            event_type=EventType.from_raw(record.event_type),
            raw_type=record.event_type,
            payload=dict(record.payload or {}),
            received_at=record.received_at,
            retry_count=record.retry_count,
        )


@dataclass
class HandlerResult:
    updated_entities: List[str] = field(default_factory=list)
    warning: Optional[str] = None
