"""
test_operator_feed.py — Operator WebSocket feed through the full app
lifespan (database, fanout worker, abuse guard wired from settings).

Run with:
    pytest tests/test_operator_feed.py -v
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from backend.app.core.security import create_access_token
from backend.app.main import app

from tests.factories import bearer

BASE = "/api/v1/emergency"


def _feed_url(role: str, user_id: str = "op-1") -> str:
    return f"{BASE}/ws?token={create_access_token({'id': user_id, 'role': role})}"


@pytest.fixture
def live_app():
    with TestClient(app) as tc:
        yield tc


class TestOperatorFeed:

    def test_admin_receives_new_alert_and_update(self, live_app):
        with live_app.websocket_connect(_feed_url("admin")) as ws:
            ws.send_json({"type": "admin-join"})
            assert ws.receive_json()["data"] == {"group": "admins"}

            resp = live_app.post(
                f"{BASE}/alert",
                json={"locationId": "main_building", "emergencyType": "security"},
                headers={**bearer("student"), "X-Device-Fingerprint": "feed-device-1"},
            )
            assert resp.status_code == 201
            alert_id = resp.json()["alertId"]

            created = ws.receive_json()
            assert created["type"] == "new-emergency"
            assert created["data"]["alertId"] == alert_id
            assert created["data"]["location"]["building"] == "Main Building"

            live_app.patch(f"{BASE}/{alert_id}", json={"status": "investigating"}, headers=bearer("admin", "adm-1"))
            updated = ws.receive_json()
            assert updated["type"] == "emergency-updated"
            assert updated["data"] == {"alertId": alert_id, "status": "investigating"}

    def test_ping_pong(self, live_app):
        with live_app.websocket_connect(_feed_url("police")) as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_police_cannot_join_admins(self, live_app):
        with live_app.websocket_connect(_feed_url("police")) as ws:
            ws.send_json({"type": "admin-join"})
            msg = ws.receive_json()
            assert msg["type"] == "error"

    def test_invalid_json(self, live_app):
        with live_app.websocket_connect(_feed_url("admin")) as ws:
            ws.send_text("not json")
            assert ws.receive_json()["data"] == {"message": "Invalid JSON"}

    def test_unknown_message_type(self, live_app):
        with live_app.websocket_connect(_feed_url("admin")) as ws:
            ws.send_json({"type": "subscribe"})
            assert ws.receive_json()["type"] == "error"

    def test_student_rejected(self, live_app):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with live_app.websocket_connect(_feed_url("student")) as ws:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_missing_token_rejected(self, live_app):
        with pytest.raises(WebSocketDisconnect):
            with live_app.websocket_connect(f"{BASE}/ws") as ws:
                ws.receive_json()

    def test_health_after_startup(self, live_app):
        body = live_app.get("/health").json()
        fanout = next(c for c in body["components"] if c["name"] == "live_fanout")
        assert fanout["status"] == "healthy"
        email = next(c for c in body["components"] if c["name"] == "email")
        assert email["status"] == "degraded"

    def test_dropped_session_closed_on_rejoin(self, live_app):
        fanout = app.state.fanout
        with live_app.websocket_connect(_feed_url("admin", "op-dropped")) as ws:
            ws.send_json({"type": "admin-join"})
            ws.receive_json()
            session_id = next(s["sessionId"] for s in fanout.snapshot() if s["operatorId"] == "op-dropped")
            live_app.portal.call(fanout.disconnect, session_id)

            ws.send_json({"type": "admin-join"})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 1011
