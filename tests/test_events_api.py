from __future__ import annotations

from coachnotify.events_engine.schemas import EventType, HandlerResult


class Toggle:
    def __init__(self) -> None:
        self.fail = True

    def __call__(self, event):
        if self.fail:
            raise RuntimeError("downstream timeout")
        return HandlerResult()


def _ingest(pipeline, body: bytes):
    return pipeline.gateway.ingest(body, pipeline.verifier.sign(body))


def test_event_listing_and_lookup(client, pipeline, provider_event) -> None:
    _ingest(pipeline, provider_event("evt_list_1", "invoice.payment_succeeded", {"id": "in_1", "subscription": "sub_x"}))
    _ingest(pipeline, provider_event("evt_list_2", "charge.refunded"))

    listed = client.get("/api/v1/events")
    assert listed.status_code == 200
    assert {item["external_id"] for item in listed.json()} == {"evt_list_1", "evt_list_2"}

    filtered = client.get("/api/v1/events", params={"event_type": "charge.refunded"})
    [unhandled] = filtered.json()
    assert unhandled["status"] == "processed"
    assert unhandled["warning"] == "unhandled event type"

    detail = client.get("/api/v1/events/evt_list_1")
    assert detail.status_code == 200
    assert detail.json()["payload"]["data"]["object"]["id"] == "in_1"
    assert "sub_x" in detail.json()["warning"]

    assert client.get("/api/v1/events/evt_nope").status_code == 404
    assert client.get("/api/v1/events", params={"status": "bogus"}).status_code == 400


def test_reprocess_failed_event(pipeline_factory, provider_event) -> None:
    from fastapi.testclient import TestClient

    from coachnotify.main import create_app

    handler = Toggle()
    pipeline = pipeline_factory(routes={event_type: handler for event_type in EventType.supported()})
    _ingest(pipeline, provider_event("evt_retry_me", "payment_intent.canceled"))

    with TestClient(create_app(pipeline=pipeline)) as client:
        failed = client.get("/api/v1/events", params={"status": "failed"}).json()
        assert [item["external_id"] for item in failed] == ["evt_retry_me"]
        assert failed[0]["last_error"]

        handler.fail = False
        response = client.post("/api/v1/events/evt_retry_me/reprocess")
        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert response.json()["last_error"] is None

        assert client.post("/api/v1/events/evt_missing/reprocess").status_code == 404
