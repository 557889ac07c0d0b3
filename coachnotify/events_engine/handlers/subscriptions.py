"""Subscription lifecycle, invoice payment outcomes, and the invoice ledger."""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from coachnotify.core.clock import from_unix
from coachnotify.events_engine.errors import EventRejectedError
from coachnotify.events_engine.handlers.base import BaseEventHandler, format_amount
from coachnotify.events_engine.schemas import EventType, HandlerResult, StoredEvent
from coachnotify.events_engine.handlers.customers import find_customer
from coachnotify.models.billing import Invoice, Subscription, SubscriptionStatus
from coachnotify.models.notification import NotificationCategory, NotificationPriority

_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
}

_URGENT_STATUSES = {SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID, SubscriptionStatus.CANCELED}


def _plan_name(obj: Dict[str, Any]) -> Optional[str]:
    plan = obj.get("plan") or {}
    if plan.get("nickname") or plan.get("id"):
        return plan.get("nickname") or plan.get("id")
    items = (obj.get("items") or {}).get("data") or []
    if items:
        price = items[0].get("price") or {}
        return price.get("nickname") or price.get("id")
    return (obj.get("metadata") or {}).get("plan")


def _find_subscription(session: Session, provider_id: Optional[str]) -> Optional[Subscription]:
    if not provider_id:
        return None
    return session.scalar(select(Subscription).where(Subscription.provider_id == provider_id))


class SubscriptionHandler(BaseEventHandler):
    def handle(self, event: StoredEvent) -> HandlerResult:
        if event.event_type is EventType.SUBSCRIPTION_DELETED:
            return self._deleted(event)
        if event.event_type in (EventType.SUBSCRIPTION_CREATED, EventType.SUBSCRIPTION_UPDATED):
            return self._upsert(event)
        raise ValueError(f"SubscriptionHandler cannot handle {event.raw_type}")

    def _upsert(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        metadata = obj.get("metadata") or {}
        result = HandlerResult()
        raw_status = obj.get("status")
        status = _STATUS_MAP.get(raw_status or "")

        with self._transaction() as session:
            subscription = _find_subscription(session, obj.get("id"))
            if subscription is None:
                user_id = metadata.get("user_id")
                if not obj.get("id") or not user_id:
                    raise EventRejectedError(f"Subscription {obj.get('id')!r} has no user_id metadata")
                subscription = Subscription(provider_id=obj["id"], user_id=str(user_id))
                session.add(subscription)
            previous_status = subscription.status
            if status is not None:
                subscription.status = status
            else:
                result.warning = f"unrecognised subscription status {raw_status!r}"
            subscription.plan = _plan_name(obj) or subscription.plan
            subscription.current_period_start = from_unix(obj.get("current_period_start")) or subscription.current_period_start
            subscription.current_period_end = from_unix(obj.get("current_period_end")) or subscription.current_period_end
            subscription.trial_end = from_unix(obj.get("trial_end"))
            subscription.cancel_at = from_unix(obj.get("cancel_at"))
            subscription.canceled_at = from_unix(obj.get("canceled_at")) or subscription.canceled_at
            if metadata.get("sessions_limit") is not None:
                subscription.sessions_limit = int(metadata["sessions_limit"])
            session.flush()
            result.updated_entities.append(f"subscription:{subscription.provider_id}")
            user_id, current = subscription.user_id, subscription.status

        self._logger.info(
            "subscription_synced",
            extra={"event_id": event.external_id, "subscription": obj.get("id"), "status": current.value},
        )
        if event.event_type is EventType.SUBSCRIPTION_UPDATED and previous_status == current:
            body = "Your coaching subscription details were updated."
        else:
            body = f"Your coaching subscription is now {current.value.replace('_', ' ')}."
        self._notify(
            event,
            user_id=user_id,
            category=NotificationCategory.SUBSCRIPTION_UPDATED,
            title="Subscription updated",
            body=body,
            priority=NotificationPriority.HIGH if current in _URGENT_STATUSES else NotificationPriority.MEDIUM,
            data={"subscription_id": obj.get("id"), "status": current.value},
        )
        return result

    def _deleted(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        now = self._clock.now()
        with self._transaction() as session:
            subscription = _find_subscription(session, obj.get("id"))
            if subscription is None:
                raise EventRejectedError(f"Unknown subscription {obj.get('id')!r}")
            subscription.status = SubscriptionStatus.CANCELED
            subscription.ended_at = from_unix(obj.get("ended_at")) or now
            subscription.canceled_at = subscription.canceled_at or from_unix(obj.get("canceled_at")) or now
            user_id = subscription.user_id

        self._logger.info("subscription_deleted", extra={"event_id": event.external_id, "subscription": obj.get("id")})
        self._notify(
            event,
            user_id=user_id,
            category=NotificationCategory.SUBSCRIPTION_UPDATED,
            title="Subscription ended",
            body="Your coaching subscription has ended.",
            priority=NotificationPriority.HIGH,
            data={"subscription_id": obj.get("id"), "status": SubscriptionStatus.CANCELED.value},
        )
        return HandlerResult(updated_entities=[f"subscription:{obj.get('id')}"])


class InvoiceHandler(BaseEventHandler):
    def handle(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        subscription_ref = obj.get("subscription")
        succeeded = event.event_type is EventType.INVOICE_PAYMENT_SUCCEEDED
        if not succeeded and event.event_type is not EventType.INVOICE_PAYMENT_FAILED:
            raise ValueError(f"InvoiceHandler cannot handle {event.raw_type}")

        with self._transaction() as session:
            subscription = _find_subscription(session, subscription_ref)
            if subscription is None:
                raise EventRejectedError(f"Invoice {obj.get('id')!r} references unknown subscription {subscription_ref!r}")
            if succeeded:
                subscription.status = SubscriptionStatus.ACTIVE
                subscription.sessions_used = 0
                period = ((obj.get("lines") or {}).get("data") or [{}])[0].get("period") or {}
                subscription.current_period_start = from_unix(period.get("start")) or subscription.current_period_start
                subscription.current_period_end = from_unix(period.get("end")) or subscription.current_period_end
            else:
                subscription.status = SubscriptionStatus.PAST_DUE
            user_id = subscription.user_id

        currency = obj.get("currency")
        if succeeded:
            amount = obj.get("amount_paid")
            self._logger.info("invoice_paid", extra={"event_id": event.external_id, "subscription": subscription_ref})
            self._notify(
                event,
                user_id=user_id,
                category=NotificationCategory.PAYMENT_RECEIVED,
                title="Subscription renewed",
                body=f"We received your subscription payment of {format_amount(amount, currency)}.",
                data={"invoice_id": obj.get("id"), "amount": amount},
            )
        else:
            amount = obj.get("amount_due")
            self._logger.info("invoice_payment_failed", extra={"event_id": event.external_id, "subscription": subscription_ref})
            self._notify(
                event,
                user_id=user_id,
                category=NotificationCategory.PAYMENT_FAILED,
                title="Subscription payment failed",
                body=(
                    f"We could not collect your subscription payment of {format_amount(amount, currency)}. "
                    "Please update your payment method."
                ),
                priority=NotificationPriority.URGENT,
                data={"invoice_id": obj.get("id"), "attempt_count": obj.get("attempt_count")},
            )
        return HandlerResult(updated_entities=[f"subscription:{subscription_ref}"])


class InvoiceLedgerHandler(BaseEventHandler):
    """Upserts the local invoice copy on every invoice lifecycle event.

    The customer and subscription links are resolved when known locally and
    left empty otherwise; the ledger never notifies anyone.
    """

    def handle(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        provider_id = obj.get("id")
        if not provider_id:
            raise EventRejectedError("Invoice has no id")
        transitions = obj.get("status_transitions") or {}

        with self._transaction() as session:
            invoice = session.scalar(select(Invoice).where(Invoice.provider_id == provider_id))
            if invoice is None:
                invoice = Invoice(provider_id=provider_id)
                session.add(invoice)
            customer = find_customer(session, obj.get("customer"))
            subscription = _find_subscription(session, obj.get("subscription"))
            invoice.customer_id = customer.id if customer is not None else invoice.customer_id
            invoice.subscription_id = subscription.id if subscription is not None else invoice.subscription_id
            invoice.number = obj.get("number")
            invoice.status = obj.get("status")
            invoice.subtotal = int(obj.get("subtotal") or 0)
            invoice.tax = int(obj.get("tax") or 0)
            invoice.total = int(obj.get("total") or 0)
            invoice.amount_paid = int(obj.get("amount_paid") or 0)
            invoice.amount_due = int(obj.get("amount_due") or 0)
            invoice.currency = obj.get("currency") or invoice.currency or "usd"
            invoice.due_date = from_unix(obj.get("due_date"))
            invoice.period_start = from_unix(obj.get("period_start"))
            invoice.period_end = from_unix(obj.get("period_end"))
            invoice.paid_at = from_unix(transitions.get("paid_at")) or invoice.paid_at
            invoice.voided_at = from_unix(transitions.get("voided_at")) or invoice.voided_at
            invoice.hosted_invoice_url = obj.get("hosted_invoice_url")
            invoice.invoice_pdf = obj.get("invoice_pdf")
            invoice.receipt_number = obj.get("receipt_number")
            invoice.provider_metadata = dict(obj.get("metadata") or {})

        self._logger.info(
            "invoice_synced",
            extra={"event_id": event.external_id, "invoice": provider_id, "status": obj.get("status")},
        )
        return HandlerResult(updated_entities=[f"invoice:{provider_id}"])
