"""HTTP and WebSocket surface, run against in-memory services."""
from datetime import datetime, timedelta, timezone

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import auth


def _order_body(**overrides) -> dict:
    body = {
        "description": "Two boxes of medicine",
        "category": "pharmacy",
        "offered_price": 5000,
        "pickup": {"address": "A", "lat": 4.6097, "lng": -74.0817},
        "delivery": {"address": "B", "lat": 4.6510, "lng": -74.0550},
        "deadline": (datetime.now(timezone.utc) + timedelta(hours=2)).isoformat(),
    }
    body.update(overrides)
    return body


def _create(client) -> str:
    response = client.post("/orders", json=_order_body(), headers=auth("tok-customer"))
    assert response.status_code == 201
    return response.json()["order_id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_metrics_exposed(client):
    _create(client)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "orders_created_total" in response.text


def test_missing_or_bad_token(client):
    assert client.post("/orders", json=_order_body()).status_code == 401
    response = client.post("/orders", json=_order_body(), headers=auth("forged"))
    assert response.status_code == 401
    assert response.json()["error"] == "authentication_error"


def test_create_validation_errors(client):
    response = client.post("/orders", json=_order_body(offered_price=10), headers=auth("tok-customer"))
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"

    past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
    response = client.post("/orders", json=_order_body(deadline=past), headers=auth("tok-customer"))
    assert response.status_code == 400

    response = client.post("/orders", json=_order_body(category="weapons"), headers=auth("tok-customer"))
    assert response.status_code == 422


def test_delivery_flow_over_http(client):
    order_id = _create(client)

    response = client.post(f"/orders/{order_id}/accept", headers=auth("tok-courier-x"))
    assert response.status_code == 200
    assert response.json()["courier"] == "courier-x"

    response = client.post(f"/orders/{order_id}/accept", headers=auth("tok-courier-y"))
    assert response.status_code == 409
    assert response.json() == {
        "error": "conflict",
        "detail": "order is no longer available",
        "current_state": "accepted",
    }

    response = client.post(
        f"/orders/{order_id}/advance", json={"state": "completed"}, headers=auth("tok-courier-x")
    )
    assert response.status_code == 409

    for state in ("en_route", "in_progress", "completed"):
        response = client.post(
            f"/orders/{order_id}/advance", json={"state": state}, headers=auth("tok-courier-x")
        )
        assert response.status_code == 200
        assert response.json()["state"] == state
    assert response.json()["completed_at"] is not None

    response = client.post(
        f"/orders/{order_id}/rate", json={"rating": 5, "comment": "great"}, headers=auth("tok-customer")
    )
    assert response.status_code == 200
    assert response.json()["requester_rating"]["rating"] == 5

    response = client.post(f"/orders/{order_id}/rate", json={"rating": 5}, headers=auth("tok-customer"))
    assert response.status_code == 400

    response = client.post(f"/orders/{order_id}/rate", json={"rating": 3}, headers=auth("tok-other-customer"))
    assert response.status_code == 403


def test_customer_cannot_accept(client):
    order_id = _create(client)
    response = client.post(f"/orders/{order_id}/accept", headers=auth("tok-customer"))
    assert response.status_code == 403
    assert response.json()["error"] == "authorization_error"


def test_unknown_order(client):
    response = client.get("/orders/does-not-exist", headers=auth("tok-customer"))
    assert response.status_code == 404


def test_cancel_then_cancel_again(client):
    order_id = _create(client)
    client.post(f"/orders/{order_id}/accept", headers=auth("tok-courier-x"))

    response = client.post(f"/orders/{order_id}/cancel", headers=auth("tok-courier-x"))
    assert response.status_code == 200
    assert response.json()["courier"] is None
    assert response.json()["previous_courier"] == "courier-x"

    response = client.post(f"/orders/{order_id}/cancel", headers=auth("tok-admin"))
    assert response.status_code == 409


def test_my_orders(client):
    first = _create(client)
    second = _create(client)
    response = client.get("/orders/mine", headers=auth("tok-customer"))
    assert {o["order_id"] for o in response.json()} == {first, second}
    assert client.get("/orders/mine", headers=auth("tok-other-customer")).json() == []


def test_courier_listings_and_stats(client):
    order_id = _create(client)

    available = client.get("/couriers/me/orders/available", headers=auth("tok-courier-x")).json()
    assert [o["order_id"] for o in available] == [order_id]

    client.post(f"/orders/{order_id}/accept", headers=auth("tok-courier-x"))
    active = client.get("/couriers/me/orders/active", headers=auth("tok-courier-x")).json()
    assert [o["order_id"] for o in active] == [order_id]

    stats = client.get("/couriers/me/stats", headers=auth("tok-courier-x")).json()
    assert stats["active"] == 1
    assert stats["completed"] == 0

    response = client.get("/couriers/me/orders/everything", headers=auth("tok-courier-x"))
    assert response.status_code == 400


def test_availability_and_location(client):
    response = client.put("/couriers/me/availability", json={"available": False}, headers=auth("tok-courier-x"))
    assert response.json() == {"courier": "courier-x", "available": False}

    order_id = _create(client)
    assert client.get("/couriers/me/orders/available", headers=auth("tok-courier-x")).json() == []
    assert client.post(f"/orders/{order_id}/accept", headers=auth("tok-courier-x")).status_code == 409

    response = client.put("/couriers/me/location", json={"lat": 4.6, "lng": -74.0}, headers=auth("tok-courier-y"))
    assert response.status_code == 200
    response = client.put("/couriers/me/location", json={"lat": 4.6, "lng": -74.0}, headers=auth("tok-customer"))
    assert response.status_code == 403

    couriers = client.get("/couriers/available", headers=auth("tok-admin")).json()
    assert [c["courier"] for c in couriers] == ["courier-y"]


def test_recent_orders_and_fleet_summary(client):
    order_id = _create(client)
    client.post(f"/orders/{order_id}/accept", headers=auth("tok-courier-x"))
    recent = client.get("/couriers/me/orders/recent", headers=auth("tok-courier-x")).json()
    assert [o["order_id"] for o in recent] == [order_id]

    client.put("/couriers/me/location", json={"lat": 4.6, "lng": -74.0}, headers=auth("tok-courier-x"))
    client.put("/couriers/me/location", json={"lat": 4.7, "lng": -74.1}, headers=auth("tok-courier-y"))
    client.put("/couriers/me/availability", json={"available": False}, headers=auth("tok-courier-y"))

    summary = client.get("/couriers/summary", headers=auth("tok-admin")).json()
    assert summary == {"total": 2, "available": 1, "active": 2}
    assert client.get("/couriers/summary", headers=auth("tok-courier-x")).status_code == 403


def test_requester_cannot_cancel(client):
    order_id = _create(client)
    response = client.post(f"/orders/{order_id}/cancel", headers=auth("tok-customer"))
    assert response.status_code == 403
    assert client.get(f"/orders/{order_id}", headers=auth("tok-customer")).json()["state"] == "pending"


def test_tracking(client):
    order_id = _create(client)
    client.post(f"/orders/{order_id}/accept", headers=auth("tok-courier-x"))
    client.put("/couriers/me/location", json={"lat": 4.6097, "lng": -74.0817}, headers=auth("tok-courier-x"))

    response = client.get(f"/orders/{order_id}/tracking", headers=auth("tok-customer"))
    assert response.status_code == 200
    view = response.json()
    assert view["courier"] == "courier-x"
    assert view["stale"] is False
    assert view["eta_minutes"] >= 5

    response = client.get(f"/orders/{order_id}/tracking", headers=auth("tok-other-customer"))
    assert response.status_code == 403


def test_admin_endpoints_require_admin(client):
    response = client.post("/admin/notifications/test", json={}, headers=auth("tok-customer"))
    assert response.status_code == 403
    assert client.get("/admin/connections", headers=auth("tok-courier-x")).status_code == 403


def test_test_notification_to_offline_identity(client):
    response = client.post(
        "/admin/notifications/test", json={"identity": "cust-1"}, headers=auth("tok-admin")
    )
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "delivered": False, "recipients": 0}


def test_live_session_receives_pushed_events(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "auth", "token": "tok-courier-x"})
        assert ws.receive_json() == {"type": "auth_ok", "identity": "courier-x", "role": "courier"}

        sessions = client.get("/admin/connections", headers=auth("tok-admin")).json()["sessions"]
        assert sessions["courier"] == 1

        order_id = _create(client)
        frame = ws.receive_json()
        assert frame["kind"] == "new_order"
        assert frame["payload"]["order_id"] == order_id

        response = client.post(
            "/admin/notifications/test",
            json={"identity": "courier-x", "message": "hello"},
            headers=auth("tok-admin"),
        )
        assert response.json()["delivered"] is True
        frame = ws.receive_json()
        assert frame["kind"] == "test"
        assert frame["payload"] == {"message": "hello"}


def test_live_session_rejects_bad_token(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "auth", "token": "forged"})
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4401


@pytest.mark.parametrize("token", [["tok-customer"], {"t": 1}, 42, None])
def test_live_session_rejects_non_string_token(client, token):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "auth", "token": token})
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4401
