"""Billing aggregates kept in sync with the payment provider."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Enum as SqlEnum
from sqlalchemy import Boolean, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from coachnotify.models.base import Base, TimestampMixin
from coachnotify.models.types import GUID, JSONType, UTCDateTime


def _enum_column(enum_cls: type[Enum], name: str) -> SqlEnum:
    return SqlEnum(enum_cls, name=name, native_enum=False, values_callable=lambda x: [e.value for e in x])


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    INCOMPLETE = "incomplete"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


class SessionStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class CoachingSession(TimestampMixin, Base):
    """A booked coaching session between a coach and a client."""

    __tablename__ = "coaching_sessions"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    coach_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    client_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    starts_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    status: Mapped[SessionStatus] = mapped_column(
        _enum_column(SessionStatus, "coaching_session_status"),
        nullable=False,
        default=SessionStatus.PENDING_PAYMENT,
    )
    amount_paid: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class PaymentIntent(TimestampMixin, Base):
    """Local mirror of a provider payment intent created at checkout."""

    __tablename__ = "payment_intents"
    __table_args__ = (Index("ix_payment_intents_user", "user_id"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(length=3), nullable=False, default="usd")
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_intent_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("coaching_sessions.id"), nullable=True
    )
    succeeded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String(length=1024), nullable=True)
    provider_metadata: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)


class Subscription(TimestampMixin, Base):
    """A client's recurring coaching plan."""

    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_user", "user_id"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    plan: Mapped[Optional[str]] = mapped_column(String(length=128), nullable=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus, "subscription_status"),
        nullable=False,
        default=SubscriptionStatus.INCOMPLETE,
    )
    current_period_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    sessions_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sessions_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class RevenueRecord(TimestampMixin, Base):
    """Derived ledger entry splitting a successful payment between coach and platform."""

    __tablename__ = "revenue_records"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    payment_intent_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("payment_intents.id"), unique=True, nullable=False
    )
    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), nullable=True)
    coach_id: Mapped[Optional[str]] = mapped_column(String(length=128), nullable=True)
    gross_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    provider_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    net_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    coach_earnings: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(length=3), nullable=False, default="usd")
    payout_status: Mapped[PayoutStatus] = mapped_column(
        _enum_column(PayoutStatus, "revenue_payout_status"),
        nullable=False,
        default=PayoutStatus.PENDING,
    )


class PaymentCustomer(TimestampMixin, Base):
    """Provider customer record linked to a marketplace user."""

    __tablename__ = "payment_customers"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(length=128), nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(length=320), nullable=True)
    default_payment_method_id: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    invoice_settings: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    provider_metadata: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)


class PaymentMethod(TimestampMixin, Base):
    __tablename__ = "payment_methods"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("payment_customers.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    card_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    billing_details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    detached_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)


class Invoice(TimestampMixin, Base):
    """Local ledger copy of a provider invoice."""

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[str] = mapped_column(String(length=255), unique=True, nullable=False)
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("payment_customers.id"), nullable=True
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("subscriptions.id"), nullable=True
    )
    number: Mapped[Optional[str]] = mapped_column(String(length=128), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(length=32), nullable=True)
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_due: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(length=3), nullable=False, default="usd")
    due_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    period_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    voided_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    hosted_invoice_url: Mapped[Optional[str]] = mapped_column(String(length=1024), nullable=True)
    invoice_pdf: Mapped[Optional[str]] = mapped_column(String(length=1024), nullable=True)
    receipt_number: Mapped[Optional[str]] = mapped_column(String(length=128), nullable=True)
    provider_metadata: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
