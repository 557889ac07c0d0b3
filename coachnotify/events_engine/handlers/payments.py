"""Payment intent events: session booking state and the revenue ledger."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from coachnotify.core.clock import Clock, from_unix
from coachnotify.core.database import SessionFactory
from coachnotify.events_engine.errors import EventRejectedError
from coachnotify.events_engine.handlers.base import BaseEventHandler, format_amount
from coachnotify.events_engine.schemas import EventType, HandlerResult, StoredEvent
from coachnotify.models.billing import (
    CoachingSession,
    PaymentIntent,
    PaymentStatus,
    RevenueRecord,
    SessionStatus,
)
from coachnotify.models.notification import NotificationCategory, NotificationPriority
from coachnotify.notifications.engine import NotificationEngine

PROVIDER_FEE_PERCENT = Decimal("2.9")
PROVIDER_FEE_FIXED = 30


@dataclass(frozen=True)
class RevenueSplit:
    gross: int
    provider_fee: int
    net: int
    coach_earnings: int
    platform_fee: int


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def revenue_split(gross: int, coach_share_percent: float) -> RevenueSplit:
    """Split a payment (in cents): provider fee 2.9% + 30c, coach share of the net, platform keeps the rest."""

    provider_fee = _round(Decimal(gross) * PROVIDER_FEE_PERCENT / 100) + PROVIDER_FEE_FIXED
    net = gross - provider_fee
    coach = _round(Decimal(net) * Decimal(str(coach_share_percent)) / 100)
    return RevenueSplit(
        gross=gross,
        provider_fee=provider_fee,
        net=net,
        coach_earnings=coach,
        platform_fee=net - coach,
    )


class PaymentIntentHandler(BaseEventHandler):
    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        notifier: NotificationEngine,
        clock: Optional[Clock] = None,
        coach_revenue_share: float = 80.0,
    ) -> None:
        super().__init__(session_factory=session_factory, notifier=notifier, clock=clock)
        self._coach_revenue_share = coach_revenue_share

    def handle(self, event: StoredEvent) -> HandlerResult:
        if event.event_type is EventType.PAYMENT_INTENT_SUCCEEDED:
            return self._succeeded(event)
        if event.event_type is EventType.PAYMENT_INTENT_FAILED:
            return self._failed(event)
        if event.event_type is EventType.PAYMENT_INTENT_CANCELED:
            return self._canceled(event)
        raise ValueError(f"PaymentIntentHandler cannot handle {event.raw_type}")

    def _succeeded(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        result = HandlerResult()
        with self._transaction() as session:
            intent = self._load_intent(session, obj)
            amount = int(obj.get("amount_received") or obj.get("amount") or intent.amount)
            intent.status = PaymentStatus.SUCCEEDED
            intent.succeeded_at = intent.succeeded_at or from_unix(event.created) or self._clock.now()
            intent.last_error = None
            result.updated_entities.append(f"payment_intent:{intent.provider_id}")

            coaching_session = self._load_session(session, intent)
            coach_id = coaching_session.coach_id if coaching_session else None
            if coaching_session is not None:
                coaching_session.status = SessionStatus.SCHEDULED
                coaching_session.amount_paid = amount
                result.updated_entities.append(f"coaching_session:{coaching_session.id}")

            existing = session.scalar(select(RevenueRecord).where(RevenueRecord.payment_intent_id == intent.id))
            if existing is None:
                split = revenue_split(amount, self._coach_revenue_share)
                session.add(
                    RevenueRecord(
                        payment_intent_id=intent.id,
                        session_id=intent.session_id,
                        coach_id=coach_id,
                        gross_amount=split.gross,
                        provider_fee=split.provider_fee,
                        net_amount=split.net,
                        coach_earnings=split.coach_earnings,
                        platform_fee=split.platform_fee,
                        currency=intent.currency,
                    )
                )
                result.updated_entities.append(f"revenue_record:{intent.provider_id}")
            client_id, currency, session_id = intent.user_id, intent.currency, intent.session_id

        self._logger.info(
            "payment_intent_succeeded",
            extra={"event_id": event.external_id, "payment_intent": obj.get("id"), "amount": amount},
        )
        self._notify(
            event,
            user_id=client_id,
            category=NotificationCategory.PAYMENT_RECEIVED,
            title="Payment received",
            body=f"We received your payment of {format_amount(amount, currency)}.",
            data={"payment_intent_id": obj.get("id"), "amount": amount},
        )
        if session_id is not None:
            self._notify(
                event,
                user_id=coach_id,
                category=NotificationCategory.SESSION_CONFIRMED,
                title="Session confirmed",
                body="A client has paid for a coaching session with you.",
                data={"session_id": str(session_id)},
            )
        return result

    def _failed(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        error = (obj.get("last_payment_error") or {}).get("message") or "Payment failed"
        with self._transaction() as session:
            intent = self._load_intent(session, obj)
            intent.status = PaymentStatus.FAILED
            intent.last_error = error[:1024]
            client_id, amount, currency = intent.user_id, intent.amount, intent.currency

        self._logger.info(
            "payment_intent_failed",
            extra={"event_id": event.external_id, "payment_intent": obj.get("id"), "error": error},
        )
        self._notify(
            event,
            user_id=client_id,
            category=NotificationCategory.PAYMENT_FAILED,
            title="Payment failed",
            body=f"Your payment of {format_amount(amount, currency)} could not be processed: {error}",
            priority=NotificationPriority.HIGH,
            data={"payment_intent_id": obj.get("id")},
        )
        return HandlerResult(updated_entities=[f"payment_intent:{obj.get('id')}"])

    def _canceled(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        result = HandlerResult()
        with self._transaction() as session:
            intent = self._load_intent(session, obj)
            intent.status = PaymentStatus.CANCELED
            intent.canceled_at = intent.canceled_at or from_unix(obj.get("canceled_at")) or self._clock.now()
            result.updated_entities.append(f"payment_intent:{intent.provider_id}")
            coaching_session = self._load_session(session, intent)
            coach_id = None
            if coaching_session is not None and coaching_session.status is not SessionStatus.COMPLETED:
                coaching_session.status = SessionStatus.CANCELLED
                coach_id = coaching_session.coach_id
                result.updated_entities.append(f"coaching_session:{coaching_session.id}")
            client_id, session_id = intent.user_id, intent.session_id

        self._logger.info("payment_intent_canceled", extra={"event_id": event.external_id, "payment_intent": obj.get("id")})
        if session_id is None:
            return result
        for recipient in (client_id, coach_id):
            self._notify(
                event,
                user_id=recipient,
                category=NotificationCategory.SESSION_CANCELLED,
                title="Session cancelled",
                body="The coaching session was cancelled because its payment was cancelled.",
                priority=NotificationPriority.HIGH,
                data={"session_id": str(session_id)},
            )
        return result

    @staticmethod
    def _load_intent(session: Session, obj: dict) -> PaymentIntent:
        provider_id = obj.get("id")
        intent = None
        if provider_id:
            intent = session.scalar(select(PaymentIntent).where(PaymentIntent.provider_id == provider_id))
        if intent is None:
            raise EventRejectedError(f"Unknown payment intent {provider_id!r}")
        return intent

    @staticmethod
    def _load_session(session: Session, intent: PaymentIntent) -> Optional[CoachingSession]:
        if intent.session_id is None:
            return None
        return session.get(CoachingSession, intent.session_id)
