from __future__ import annotations

import pytest
from sqlalchemy import func, select

from coachnotify.core.database import SessionLocal, session_scope
from coachnotify.events_engine.errors import (
    EventNotFoundError,
    EventRejectedError,
    MalformedEventError,
    PayloadTooLargeError,
    SignatureVerificationError,
)
from coachnotify.events_engine.schemas import EventType, HandlerResult
from coachnotify.models.inbound_event import EventStatus, InboundEvent


class CountingHandler:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls = []
        self.error = error

    def __call__(self, event):
        self.calls.append(event.external_id)
        if self.error is not None:
            raise self.error
        return HandlerResult(updated_entities=["thing:1"])


def _routes(handler):
    return {event_type: handler for event_type in EventType.supported()}


def _stored(external_id: str) -> InboundEvent:
    with session_scope(SessionLocal) as session:
        return session.scalar(select(InboundEvent).where(InboundEvent.external_id == external_id))


def _event_count() -> int:
    with session_scope(SessionLocal) as session:
        return session.scalar(select(func.count()).select_from(InboundEvent))


def test_first_delivery_runs_handler_and_marks_processed(pipeline_factory, provider_event) -> None:
    handler = CountingHandler()
    pipeline = pipeline_factory(routes=_routes(handler))
    body = provider_event("evt_1", "payment_intent.succeeded", {"id": "pi_1"})

    result = pipeline.gateway.ingest(body, pipeline.verifier.sign(body))

    assert result.accepted and not result.duplicate
    assert result.status is EventStatus.PROCESSED
    assert handler.calls == ["evt_1"]
    record = _stored("evt_1")
    assert record.status is EventStatus.PROCESSED
    assert record.payload["data"]["object"]["id"] == "pi_1"
    assert record.processed_at is not None


def test_redelivery_is_a_duplicate_and_does_not_rerun_handler(pipeline_factory, provider_event) -> None:
    handler = CountingHandler()
    pipeline = pipeline_factory(routes=_routes(handler))
    body = provider_event("evt_dup", "invoice.payment_succeeded")
    proof = pipeline.verifier.sign(body)

    results = [pipeline.gateway.ingest(body, proof) for _ in range(3)]

    assert [r.duplicate for r in results] == [False, True, True]
    assert all(r.accepted for r in results)
    assert results[-1].status is EventStatus.PROCESSED
    assert handler.calls == ["evt_dup"]
    assert _event_count() == 1


@pytest.mark.parametrize(
    "proof",
    [None, "t=1,v1=0000", "garbage"],
)
def test_unauthenticated_payload_leaves_no_trace(pipeline_factory, provider_event, proof) -> None:
    handler = CountingHandler()
    pipeline = pipeline_factory(routes=_routes(handler))
    body = provider_event("evt_forged", "payment_intent.succeeded")

    with pytest.raises(SignatureVerificationError):
        pipeline.gateway.ingest(body, proof)

    assert handler.calls == []
    assert _event_count() == 0


def test_empty_and_oversized_payloads_are_rejected(pipeline_factory) -> None:
    pipeline = pipeline_factory(routes=_routes(CountingHandler()))

    with pytest.raises(MalformedEventError):
        pipeline.gateway.ingest(b"", pipeline.verifier.sign(b""))

    big = b"{" + b" " * (pipeline.settings.max_payload_bytes + 1) + b"}"
    with pytest.raises(PayloadTooLargeError):
        pipeline.gateway.ingest(big, pipeline.verifier.sign(big))
    assert _event_count() == 0


@pytest.mark.parametrize(
    "body",
    [b"not json", b"[1, 2, 3]", b'{"type": "payment_intent.succeeded"}'],
)
def test_malformed_events_are_rejected_after_authentication(pipeline_factory, body) -> None:
    pipeline = pipeline_factory(routes=_routes(CountingHandler()))

    with pytest.raises(MalformedEventError):
        pipeline.gateway.ingest(body, pipeline.verifier.sign(body))
    assert _event_count() == 0


def test_unknown_event_type_is_processed_with_warning(pipeline_factory, provider_event) -> None:
    handler = CountingHandler()
    pipeline = pipeline_factory(routes=_routes(handler))
    body = provider_event("evt_unknown", "charge.dispute.created")

    result = pipeline.gateway.ingest(body, pipeline.verifier.sign(body))

    assert result.status is EventStatus.PROCESSED
    assert handler.calls == []
    assert _stored("evt_unknown").warning == "unhandled event type"


def test_rejected_event_is_processed_with_warning_and_not_retried(pipeline_factory, provider_event) -> None:
    handler = CountingHandler(EventRejectedError("Unknown payment intent 'pi_x'"))
    pipeline = pipeline_factory(routes=_routes(handler))
    body = provider_event("evt_rejected", "payment_intent.succeeded")

    result = pipeline.gateway.ingest(body, pipeline.verifier.sign(body))

    assert result.accepted and result.status is EventStatus.PROCESSED
    record = _stored("evt_rejected")
    assert record.warning == "Unknown payment intent 'pi_x'"
    assert record.retry_count == 0


def test_handler_failures_climb_to_dead_letter(pipeline_factory, provider_event) -> None:
    handler = CountingHandler(RuntimeError("database down"))
    pipeline = pipeline_factory(routes=_routes(handler))
    body = provider_event("evt_broken", "customer.subscription.updated")
    proof = pipeline.verifier.sign(body)

    first = pipeline.gateway.ingest(body, proof)
    assert not first.accepted and first.status is EventStatus.FAILED
    record = _stored("evt_broken")
    assert record.retry_count == 1
    assert "database down" in record.last_error

    # Provider redeliveries re-claim a failed event below the ceiling.
    second = pipeline.gateway.ingest(body, proof)
    assert not second.duplicate and second.status is EventStatus.FAILED
    third = pipeline.gateway.ingest(body, proof)
    assert third.accepted and third.status is EventStatus.DEAD_LETTER

    fourth = pipeline.gateway.ingest(body, proof)
    assert fourth.duplicate and fourth.status is EventStatus.DEAD_LETTER
    assert len(handler.calls) == 3
    assert _stored("evt_broken").retry_count == 3


def test_reprocess_resets_dead_letter(pipeline_factory, provider_event) -> None:
    handler = CountingHandler(RuntimeError("bug"))
    pipeline = pipeline_factory(routes=_routes(handler))
    body = provider_event("evt_fixme", "invoice.payment_failed")
    proof = pipeline.verifier.sign(body)
    for _ in range(3):
        pipeline.gateway.ingest(body, proof)
    assert _stored("evt_fixme").status is EventStatus.DEAD_LETTER

    handler.error = None
    status = pipeline.gateway.reprocess("evt_fixme")

    assert status is EventStatus.PROCESSED
    record = _stored("evt_fixme")
    assert record.status is EventStatus.PROCESSED
    assert record.retry_count == 0
    assert record.last_error is None


def test_reprocess_of_processed_event_is_a_noop(pipeline_factory, provider_event) -> None:
    handler = CountingHandler()
    pipeline = pipeline_factory(routes=_routes(handler))
    body = provider_event("evt_done", "invoice.payment_succeeded")
    pipeline.gateway.ingest(body, pipeline.verifier.sign(body))

    assert pipeline.gateway.reprocess("evt_done") is EventStatus.PROCESSED
    assert handler.calls == ["evt_done"]

    with pytest.raises(EventNotFoundError):
        pipeline.gateway.reprocess("evt_missing")
