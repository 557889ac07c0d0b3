"""Inbound event gateway: authenticate, deduplicate, dispatch."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from coachnotify.events_engine.errors import (
    EventNotFoundError,
    EventRejectedError,
    MalformedEventError,
    PayloadTooLargeError,
)
from coachnotify.events_engine.router import EventRouter
from coachnotify.events_engine.schemas import EventType
from coachnotify.events_engine.signature import SignatureVerifier
from coachnotify.events_engine.store import ClaimResult, IdempotencyStore
from coachnotify.models.inbound_event import EventStatus
from coachnotify.schemas.event import ProviderEvent

LOGGER = logging.getLogger("coachnotify.events_engine.gateway")

UNHANDLED_WARNING = "unhandled event type"


@dataclass(frozen=True)
class IngestResult:
    accepted: bool
    duplicate: bool
    status: Optional[EventStatus]
    external_id: str
    event_type: str


class EventGateway:
    """Accepts signed provider payloads and runs each event's handler at most once per claim.

    Every rejection (size, empty, signature, malformed) happens before the
    idempotency store is touched, so a rejected payload leaves no trace.
    """

    def __init__(
        self,
        *,
        store: IdempotencyStore,
        router: EventRouter,
        verifier: SignatureVerifier,
        max_payload_bytes: int = 1024 * 1024,
    ) -> None:
        self._store = store
        self._router = router
        self._verifier = verifier
        self._max_payload_bytes = max_payload_bytes

    @property
    def store(self) -> IdempotencyStore:
        return self._store

    def ingest(self, raw_payload: bytes, auth_proof: Optional[str]) -> IngestResult:
        if len(raw_payload) > self._max_payload_bytes:
            raise PayloadTooLargeError(
                f"Payload of {len(raw_payload)} bytes exceeds limit of {self._max_payload_bytes} bytes"
            )
        if not raw_payload.strip():
            raise MalformedEventError("Payload is empty")

        self._verifier.verify(raw_payload, auth_proof)

        try:
            payload = json.loads(raw_payload)
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedEventError("Payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedEventError("Payload must be a JSON object")
        try:
            event = ProviderEvent.model_validate(payload)
        except ValidationError as exc:
            raise MalformedEventError(f"Payload is not a provider event: {exc.error_count()} error(s)") from exc

        claim = self._store.claim(event, payload, signature=auth_proof)
        if claim is ClaimResult.DUPLICATE:
            LOGGER.info("webhook_event_duplicate", extra={"external_id": event.id, "event_type": event.type})
            return IngestResult(
                accepted=True,
                duplicate=True,
                status=self._store.status_of(event.id),
                external_id=event.id,
                event_type=event.type,
            )

        LOGGER.info(
            "webhook_event_claimed",
            extra={"external_id": event.id, "event_type": event.type, "claim": claim.value},
        )
        status = self.dispatch(event.id)
        return IngestResult(
            accepted=status is not EventStatus.FAILED,
            duplicate=False,
            status=status,
            external_id=event.id,
            event_type=event.type,
        )

    def dispatch(self, external_id: str) -> EventStatus:
        """Run the handler for an event the caller has already claimed."""

        event = self._store.load(external_id)
        handler = self._router.route(event.event_type)
        if handler is None:
            LOGGER.warning("webhook_event_unhandled", extra={"external_id": external_id, "event_type": event.raw_type})
            self._store.mark_processed(external_id, warning=UNHANDLED_WARNING)
            return EventStatus.PROCESSED

        try:
            result = handler(event)
        except EventRejectedError as exc:
            LOGGER.warning(
                "webhook_event_rejected",
                extra={"external_id": external_id, "event_type": event.raw_type, "reason": str(exc)},
            )
            self._store.mark_processed(external_id, warning=str(exc))
            return EventStatus.PROCESSED
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception(
                "webhook_event_failed",
                extra={"external_id": external_id, "event_type": event.raw_type, "retry_count": event.retry_count},
            )
            return self._store.mark_failed(external_id, f"{type(exc).__name__}: {exc}")

        warning = result.warning if result is not None else None
        self._store.mark_processed(external_id, warning=warning)
        LOGGER.info(
            "webhook_event_processed",
            extra={
                "external_id": external_id,
                "event_type": event.raw_type,
                "updated_entities": result.updated_entities if result is not None else [],
            },
        )
        return EventStatus.PROCESSED

    def reprocess(self, external_id: str) -> EventStatus:
        """Operator action: give a failed or dead-lettered event a fresh retry budget and run it now."""

        status = self._store.status_of(external_id)
        if status is None:
            raise EventNotFoundError(f"Event {external_id} not found")
        if not self._store.reset(external_id):
            LOGGER.info("webhook_event_reprocess_skipped", extra={"external_id": external_id, "status": status.value})
            return status
        LOGGER.info("webhook_event_reprocess", extra={"external_id": external_id, "previous_status": status.value})
        return self.dispatch(external_id)

    def summary_event_types(self) -> list[str]:
        return [event_type.value for event_type in EventType.supported()]
