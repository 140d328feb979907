"""
test_fanout.py — Operator session registry and live event delivery.

Run with:
    pytest tests/test_fanout.py -v
"""

from __future__ import annotations

import pytest

from backend.app.alerts.fanout import (
    ADMINS,
    EVENT_NEW,
    EVENT_STATUS,
    POLICE,
    NotificationFanout,
)
from backend.app.alerts.models import AlertStatus, DeliveryStatus
from backend.app.core.errors import NotificationDeliveryError, PermissionDeniedError
from backend.app.core.security import Principal

from tests.factories import FakeWebSocket, make_draft

ADMIN = Principal(user_id="adm-1", role="admin")
SUPERADMIN = Principal(user_id="adm-0", role="superadmin")
OFFICER = Principal(user_id="pol-1", role="police")


async def _joined(fanout, principal, group):
    ws = FakeWebSocket()
    session = await fanout.connect(ws, principal)
    await fanout.join(session.session_id, group)
    return ws, session


# ═══════════════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════════════

class TestRegistry:

    async def test_connect_accepts_without_group(self, fanout):
        ws = FakeWebSocket()
        session = await fanout.connect(ws, ADMIN)
        assert ws.accepted is True
        assert session.groups == set()
        assert fanout.session_count() == 1
        assert fanout.session_count(ADMINS) == 0

    async def test_join_permitted_group(self, fanout):
        _, session = await _joined(fanout, OFFICER, POLICE)
        assert session.groups == {POLICE}
        assert fanout.session_count(POLICE) == 1

    async def test_superadmin_joins_admins(self, fanout):
        _, session = await _joined(fanout, SUPERADMIN, ADMINS)
        assert session.groups == {ADMINS}

    async def test_police_cannot_join_admins(self, fanout):
        ws = FakeWebSocket()
        session = await fanout.connect(ws, OFFICER)
        with pytest.raises(PermissionDeniedError):
            await fanout.join(session.session_id, ADMINS)
        assert fanout.session_count(ADMINS) == 0

    async def test_admin_cannot_join_police(self, fanout):
        ws = FakeWebSocket()
        session = await fanout.connect(ws, ADMIN)
        with pytest.raises(PermissionDeniedError):
            await fanout.join(session.session_id, POLICE)

    async def test_join_unknown_session(self, fanout):
        with pytest.raises(KeyError):
            await fanout.join("missing", ADMINS)

    async def test_disconnect(self, fanout):
        _, session = await _joined(fanout, ADMIN, ADMINS)
        await fanout.disconnect(session.session_id)
        await fanout.disconnect(session.session_id)
        assert fanout.session_count() == 0

    async def test_snapshot(self, fanout):
        await _joined(fanout, OFFICER, POLICE)
        (row,) = fanout.snapshot()
        assert row["role"] == "police"
        assert row["groups"] == ["police"]


# ═══════════════════════════════════════════════════════════════════════════
# Delivery
# ═══════════════════════════════════════════════════════════════════════════

class TestDelivery:

    async def test_new_alert_reaches_both_groups(self, fanout, store):
        admin_ws, _ = await _joined(fanout, ADMIN, ADMINS)
        police_ws, _ = await _joined(fanout, OFFICER, POLICE)
        alert = await store.create(make_draft())

        fanout.broadcast_new_alert(alert)
        await fanout.flush()

        for ws in (admin_ws, police_ws):
            (msg,) = ws.events(EVENT_NEW)
            assert msg["data"]["alertId"] == alert.id
            assert msg["data"]["emergencyType"] == "medical"
            assert msg["data"]["location"]["locationId"] == "library"
            assert set(msg) == {"type", "data", "timestamp"}

    async def test_unjoined_session_receives_nothing(self, fanout, store):
        lurker = FakeWebSocket()
        await fanout.connect(lurker, ADMIN)
        fanout.broadcast_new_alert(await store.create(make_draft()))
        await fanout.flush()
        assert lurker.sent == []

    async def test_status_update_payload(self, fanout):
        ws, _ = await _joined(fanout, ADMIN, ADMINS)
        fanout.broadcast_status_update("EMG-ABC", AlertStatus.RESOLVED)
        await fanout.flush()
        (msg,) = ws.events(EVENT_STATUS)
        assert msg["data"] == {"alertId": "EMG-ABC", "status": "resolved"}

    async def test_events_delivered_in_enqueue_order(self, fanout, store):
        ws, _ = await _joined(fanout, OFFICER, POLICE)
        alert = await store.create(make_draft())
        fanout.broadcast_new_alert(alert)
        fanout.broadcast_status_update(alert.id, AlertStatus.INVESTIGATING)
        fanout.broadcast_status_update(alert.id, AlertStatus.RESOLVED)
        await fanout.flush()
        assert [m["type"] for m in ws.sent] == [EVENT_NEW, EVENT_STATUS, EVENT_STATUS]
        assert [m["data"].get("status") for m in ws.sent[1:]] == ["investigating", "resolved"]

    async def test_session_in_both_groups_receives_once(self, fanout):
        hybrid = Principal(user_id="x", role="admin")
        ws = FakeWebSocket()
        session = await fanout.connect(ws, hybrid)
        await fanout.join(session.session_id, ADMINS)
        session.groups.add(POLICE)
        attempt = await fanout.deliver(EVENT_STATUS, "EMG-1", {"alertId": "EMG-1", "status": "resolved"})
        assert len(ws.sent) == 1
        assert attempt.recipients == 1

    async def test_failed_session_is_dropped(self, fanout):
        good, _ = await _joined(fanout, ADMIN, ADMINS)
        bad = FakeWebSocket(fail=True)
        bad_session = await fanout.connect(bad, OFFICER)
        await fanout.join(bad_session.session_id, POLICE)

        attempt = await fanout.deliver(EVENT_STATUS, "EMG-1", {"alertId": "EMG-1", "status": "resolved"})

        assert attempt.status == DeliveryStatus.PARTIAL
        assert attempt.failed_recipients == 1
        assert len(good.sent) == 1
        assert fanout.session_count() == 1
        assert bad.closed_code == 1011
        assert good.closed_code is None

    async def test_all_sessions_failed(self, fanout):
        bad = FakeWebSocket(fail=True)
        session = await fanout.connect(bad, ADMIN)
        await fanout.join(session.session_id, ADMINS)
        attempt = await fanout.deliver(EVENT_NEW, "EMG-1", {})
        assert attempt.status == DeliveryStatus.FAILED

    async def test_stalled_session_is_closed(self):
        fanout = NotificationFanout(queue_size=10, send_timeout=0.05)
        slow = FakeWebSocket(stall=1)
        session = await fanout.connect(slow, ADMIN)
        await fanout.join(session.session_id, ADMINS)

        first = await fanout.deliver(EVENT_NEW, "EMG-1", {"alertId": "EMG-1"})
        second = await fanout.deliver(EVENT_NEW, "EMG-2", {"alertId": "EMG-2"})

        assert first.status == DeliveryStatus.FAILED
        assert second.status == DeliveryStatus.SKIPPED
        assert slow.closed_code == 1011
        assert fanout.session_count() == 0
        with pytest.raises(KeyError):
            await fanout.join(session.session_id, ADMINS)

    async def test_no_sessions_is_skipped(self, fanout):
        attempt = await fanout.deliver(EVENT_NEW, "EMG-1", {})
        assert attempt.status == DeliveryStatus.SKIPPED
        assert attempt.recipients == 0

    async def test_late_session_gets_no_replay(self, fanout, store):
        alert = await store.create(make_draft())
        fanout.broadcast_new_alert(alert)
        await fanout.flush()

        late, _ = await _joined(fanout, ADMIN, ADMINS)
        await fanout.flush()
        assert late.sent == []
        assert [a.id for a in await store.list()] == [alert.id]

    async def test_attempts_recorded(self, fanout):
        fanout.broadcast_status_update("EMG-1", AlertStatus.RESOLVED)
        await fanout.flush()
        assert fanout.recent_attempts[-1].event == EVENT_STATUS
        assert fanout.recent_attempts[-1].alert_id == "EMG-1"


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestWorkerLifecycle:

    async def test_broadcast_before_start_raises(self):
        fo = NotificationFanout(queue_size=10)
        with pytest.raises(NotificationDeliveryError):
            fo.broadcast_status_update("EMG-1", AlertStatus.RESOLVED)

    async def test_queue_full_raises(self):
        fo = NotificationFanout(queue_size=1)
        await fo.start()
        try:
            fo.broadcast_status_update("EMG-1", AlertStatus.RESOLVED)
            with pytest.raises(NotificationDeliveryError):
                fo.broadcast_status_update("EMG-2", AlertStatus.RESOLVED)
        finally:
            await fo.stop()

    async def test_stop_delivers_queued_events(self):
        fo = NotificationFanout(queue_size=10)
        await fo.start()
        ws, _ = await _joined(fo, ADMIN, ADMINS)
        fo.broadcast_status_update("EMG-1", AlertStatus.RESOLVED)
        await fo.stop()
        assert len(ws.sent) == 1
        assert fo.running is False

    async def test_start_is_idempotent(self, fanout):
        await fanout.start()
        assert fanout.running is True
