from __future__ import annotations

TEMPLATE = {
    "name": "payment-receipt",
    "category": "payment_received",
    "subject_template": "Payment of {{ amount }} received",
    "body_template": "Thanks {{ name }}, we received {{ amount }}.",
    "channels": ["email"],
}


def test_create_list_and_conflict(client) -> None:
    created = client.post("/api/v1/templates", json=TEMPLATE)
    assert created.status_code == 201
    assert created.json()["variables"] == ["amount", "name"]

    assert client.post("/api/v1/templates", json=TEMPLATE).status_code == 409
    assert [item["name"] for item in client.get("/api/v1/templates").json()] == ["payment-receipt"]


def test_notification_from_template(client) -> None:
    template_id = client.post("/api/v1/templates", json=TEMPLATE).json()["id"]

    response = client.post(
        "/api/v1/notifications",
        json={
            "user_id": "client-1",
            "category": "payment_received",
            "template_id": template_id,
            "template_variables": {"amount": "100.00 USD", "name": "Ada"},
        },
    )

    assert response.status_code == 201
    assert response.json()["title"] == "Payment of 100.00 USD received"
    assert response.json()["body"] == "Thanks Ada, we received 100.00 USD."


def test_missing_variable_and_unknown_template(client) -> None:
    template_id = client.post("/api/v1/templates", json=TEMPLATE).json()["id"]
    request = {"user_id": "client-1", "category": "payment_received", "template_id": template_id}

    missing = client.post("/api/v1/notifications", json={**request, "template_variables": {"amount": "1"}})
    unknown = client.post(
        "/api/v1/notifications",
        json={**request, "template_id": "00000000-0000-0000-0000-000000000000"},
    )

    assert missing.status_code == 422
    assert "name" in missing.json()["detail"]
    assert unknown.status_code == 404
