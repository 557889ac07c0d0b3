"""Handlers for provider events, plus the default routing table."""

from __future__ import annotations

from typing import Optional

from coachnotify.core.clock import Clock
from coachnotify.core.database import SessionFactory
from coachnotify.events_engine.handlers.base import BaseEventHandler
from coachnotify.events_engine.handlers.customers import CustomerHandler, PaymentMethodHandler
from coachnotify.events_engine.handlers.payments import PaymentIntentHandler, RevenueSplit, revenue_split
from coachnotify.events_engine.handlers.subscriptions import InvoiceHandler, InvoiceLedgerHandler, SubscriptionHandler
from coachnotify.events_engine.router import EventRouter
from coachnotify.events_engine.schemas import EventType
from coachnotify.notifications.engine import NotificationEngine

__all__ = [
    "BaseEventHandler",
    "CustomerHandler",
    "InvoiceHandler",
    "InvoiceLedgerHandler",
    "PaymentIntentHandler",
    "PaymentMethodHandler",
    "RevenueSplit",
    "SubscriptionHandler",
    "default_router",
    "revenue_split",
]


def default_router(
    *,
    session_factory: SessionFactory,
    notifier: NotificationEngine,
    clock: Optional[Clock] = None,
    coach_revenue_share: float = 80.0,
) -> EventRouter:
    payments = PaymentIntentHandler(
        session_factory=session_factory,
        notifier=notifier,
        clock=clock,
        coach_revenue_share=coach_revenue_share,
    )
    subscriptions = SubscriptionHandler(session_factory=session_factory, notifier=notifier, clock=clock)
    invoices = InvoiceHandler(session_factory=session_factory, notifier=notifier, clock=clock)
    customers = CustomerHandler(session_factory=session_factory, notifier=notifier, clock=clock)
    payment_methods = PaymentMethodHandler(session_factory=session_factory, notifier=notifier, clock=clock)
    ledger = InvoiceLedgerHandler(session_factory=session_factory, notifier=notifier, clock=clock)
    return EventRouter(
        {
            EventType.PAYMENT_INTENT_SUCCEEDED: payments,
            EventType.PAYMENT_INTENT_FAILED: payments,
            EventType.PAYMENT_INTENT_CANCELED: payments,
            EventType.SUBSCRIPTION_CREATED: subscriptions,
            EventType.SUBSCRIPTION_UPDATED: subscriptions,
            EventType.SUBSCRIPTION_DELETED: subscriptions,
            EventType.INVOICE_PAYMENT_SUCCEEDED: invoices,
            EventType.INVOICE_PAYMENT_FAILED: invoices,
            EventType.CUSTOMER_UPDATED: customers,
            EventType.CUSTOMER_DELETED: customers,
            EventType.PAYMENT_METHOD_ATTACHED: payment_methods,
            EventType.PAYMENT_METHOD_DETACHED: payment_methods,
            EventType.INVOICE_CREATED: ledger,
            EventType.INVOICE_FINALIZED: ledger,
            EventType.INVOICE_PAID: ledger,
            EventType.INVOICE_VOIDED: ledger,
        }
    )
