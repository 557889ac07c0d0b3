from __future__ import annotations

import pytest
from starlette.websockets import WebSocketDisconnect

from coachnotify.models.notification import NotificationCategory
from coachnotify.schemas.notification import NotificationRequest


def _request(title: str) -> dict:
    return {"user_id": "client-1", "category": "coach_message", "title": title, "body": "..."}


def test_connection_without_user_is_refused(client) -> None:
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/api/v1/realtime/notifications"):
            pass

    assert excinfo.value.code == 1008


def test_backfill_then_live_messages(client, pipeline, clock) -> None:
    earlier = pipeline.engine.send(
        NotificationRequest(user_id="client-1", category=NotificationCategory.COACH_MESSAGE, title="Earlier", body="...")
    )
    pipeline.queue.run_pending()

    with client.websocket_connect("/api/v1/realtime/notifications?user_id=client-1") as websocket:
        backfill = websocket.receive_json()
        assert backfill["type"] == "notification.backfill"
        assert [item["id"] for item in backfill["data"]] == [str(earlier.id)]

        clock.advance(1)
        created = client.post("/api/v1/notifications", json=_request("Live one")).json()
        message = websocket.receive_json()
        assert message["type"] == "notification.created"
        assert message["data"]["id"] == created["id"]

        pipeline.queue.run_pending()
        update = websocket.receive_json()
        assert update["type"] == "notification.updated"
        assert update["data"]["id"] == created["id"]
        assert update["data"]["status"] == "delivered"

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json() == {"type": "pong"}


def test_backfill_can_be_disabled(client, pipeline) -> None:
    with client.websocket_connect("/api/v1/realtime/notifications?user_id=client-1&backfill=false") as websocket:
        websocket.send_json({"type": "ping"})
        assert websocket.receive_json() == {"type": "pong"}
        client.post("/api/v1/notifications", json=_request("Only live"))
        message = websocket.receive_json()

    assert message["type"] == "notification.created"
