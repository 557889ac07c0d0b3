from __future__ import annotations

USER = {"X-User-Id": "client-1"}


def test_defaults_then_partial_update(client) -> None:
    defaults = client.get("/api/v1/preferences", headers=USER).json()
    assert defaults["channels"] == {"email": True, "push": True, "sms": False, "in_app": True}
    assert defaults["categories"]["marketing"] is False
    assert defaults["quiet_hours"] == {"enabled": False, "start": "22:00", "end": "08:00", "timezone": "UTC"}

    response = client.patch(
        "/api/v1/preferences",
        headers=USER,
        json={
            "categories": {"marketing": True},
            "quiet_hours": {"enabled": True, "start": "21:30", "end": "07:00", "timezone": "Europe/Berlin"},
            "contact": {"email": "client@example.com"},
        },
    )

    assert response.status_code == 200
    updated = response.json()
    assert updated["categories"]["marketing"] is True
    assert updated["categories"]["payment_failed"] is True
    assert updated["quiet_hours"]["timezone"] == "Europe/Berlin"
    assert updated["contact"]["email"] == "client@example.com"
    assert updated["channels"] == defaults["channels"]
    assert client.get("/api/v1/preferences", headers=USER).json() == updated


def test_invalid_quiet_hours_are_rejected(client) -> None:
    response = client.patch(
        "/api/v1/preferences",
        headers=USER,
        json={"quiet_hours": {"enabled": True, "start": "9pm", "end": "07:00"}},
    )

    assert response.status_code == 400


def test_opting_in_enables_delivery(client) -> None:
    client.patch("/api/v1/preferences", headers=USER, json={"categories": {"marketing": True}})

    response = client.post(
        "/api/v1/notifications",
        json={"user_id": "client-1", "category": "marketing", "title": "Spring sale", "body": "20% off"},
    )

    assert response.status_code == 201
