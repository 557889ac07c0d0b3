"""Customer and payment method sync."""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from coachnotify.events_engine.errors import EventRejectedError
from coachnotify.events_engine.handlers.base import BaseEventHandler
from coachnotify.events_engine.schemas import EventType, HandlerResult, StoredEvent
from coachnotify.models.billing import PaymentCustomer, PaymentMethod


def find_customer(session: Session, provider_id: Optional[str]) -> Optional[PaymentCustomer]:
    if not provider_id:
        return None
    return session.scalar(select(PaymentCustomer).where(PaymentCustomer.provider_id == provider_id))


def _card_info(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    card = obj.get("card")
    if not card:
        return None
    keys = ("last4", "brand", "exp_month", "exp_year", "country", "fingerprint")
    return {key: card.get(key) for key in keys}


class CustomerHandler(BaseEventHandler):
    """Keeps the local customer record in step with the provider.

    A customer unknown locally is created only when its metadata names the
    marketplace user; otherwise the event is rejected.
    """

    def handle(self, event: StoredEvent) -> HandlerResult:
        if event.event_type is EventType.CUSTOMER_UPDATED:
            return self._updated(event)
        if event.event_type is EventType.CUSTOMER_DELETED:
            return self._deleted(event)
        raise ValueError(f"CustomerHandler cannot handle {event.raw_type}")

    def _updated(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        metadata = obj.get("metadata") or {}
        invoice_settings = obj.get("invoice_settings") or {}

        with self._transaction() as session:
            customer = find_customer(session, obj.get("id"))
            if customer is None:
                user_id = metadata.get("user_id")
                if not obj.get("id") or not user_id:
                    raise EventRejectedError(f"Customer {obj.get('id')!r} not found and has no user_id metadata")
                customer = PaymentCustomer(provider_id=obj["id"], user_id=str(user_id))
                session.add(customer)
            customer.email = obj.get("email")
            customer.default_payment_method_id = invoice_settings.get("default_payment_method")
            customer.invoice_settings = dict(invoice_settings)
            customer.provider_metadata = dict(metadata)
            customer.deleted_at = None
            session.flush()
            if customer.default_payment_method_id:
                session.execute(
                    update(PaymentMethod)
                    .where(PaymentMethod.customer_id == customer.id)
                    .values(is_default=PaymentMethod.provider_id == customer.default_payment_method_id)
                    .execution_options(synchronize_session=False)
                )

        self._logger.info("customer_synced", extra={"event_id": event.external_id, "customer": obj.get("id")})
        return HandlerResult(updated_entities=[f"customer:{obj.get('id')}"])

    def _deleted(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        now = self._clock.now()
        with self._transaction() as session:
            customer = find_customer(session, obj.get("id"))
            if customer is None:
                raise EventRejectedError(f"Unknown customer {obj.get('id')!r}")
            customer.deleted_at = customer.deleted_at or now
            session.execute(
                update(PaymentMethod)
                .where(PaymentMethod.customer_id == customer.id)
                .where(PaymentMethod.is_active.is_(True))
                .values(is_active=False, is_default=False, detached_at=now)
                .execution_options(synchronize_session=False)
            )

        self._logger.info("customer_deleted", extra={"event_id": event.external_id, "customer": obj.get("id")})
        return HandlerResult(updated_entities=[f"customer:{obj.get('id')}"])


class PaymentMethodHandler(BaseEventHandler):
    def handle(self, event: StoredEvent) -> HandlerResult:
        if event.event_type is EventType.PAYMENT_METHOD_ATTACHED:
            return self._attached(event)
        if event.event_type is EventType.PAYMENT_METHOD_DETACHED:
            return self._detached(event)
        raise ValueError(f"PaymentMethodHandler cannot handle {event.raw_type}")

    def _attached(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        provider_id = obj.get("id")
        if not provider_id:
            raise EventRejectedError("Payment method has no id")

        with self._transaction() as session:
            customer = find_customer(session, obj.get("customer"))
            if customer is None:
                raise EventRejectedError(
                    f"Payment method {provider_id!r} attached to unknown customer {obj.get('customer')!r}"
                )
            method = session.scalar(select(PaymentMethod).where(PaymentMethod.provider_id == provider_id))
            if method is None:
                method = PaymentMethod(provider_id=provider_id, customer_id=customer.id, type=obj.get("type") or "card")
                session.add(method)
            method.customer_id = customer.id
            method.type = obj.get("type") or method.type
            method.card_info = _card_info(obj)
            method.billing_details = dict(obj.get("billing_details") or {})
            method.is_active = True
            method.detached_at = None
            method.is_default = customer.default_payment_method_id == provider_id

        self._logger.info(
            "payment_method_attached",
            extra={"event_id": event.external_id, "payment_method": provider_id, "customer": obj.get("customer")},
        )
        return HandlerResult(updated_entities=[f"payment_method:{provider_id}"])

    def _detached(self, event: StoredEvent) -> HandlerResult:
        obj = event.obj
        provider_id = obj.get("id")
        with self._transaction() as session:
            method = session.scalar(select(PaymentMethod).where(PaymentMethod.provider_id == provider_id))
            if method is None:
                raise EventRejectedError(f"Unknown payment method {provider_id!r}")
            method.is_active = False
            method.is_default = False
            method.detached_at = method.detached_at or self._clock.now()

        self._logger.info("payment_method_detached", extra={"event_id": event.external_id, "payment_method": provider_id})
        return HandlerResult(updated_entities=[f"payment_method:{provider_id}"])
