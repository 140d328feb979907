"""
fanout.py — Live push of alert events to connected operator dashboards.

Operators hold a WebSocket open and announce their role once connected
(``admin-join`` / ``police-join``). Every alert event goes to the union of
the ``admins`` and ``police`` groups, each session at most once.

    broadcast_*()  ──put_nowait──►  FIFO queue  ──►  one worker  ──►  sessions

Broadcast calls only enqueue, so request handlers never wait on a slow
dashboard. The single worker preserves enqueue order, which keeps
``new-emergency`` ahead of any ``emergency-updated`` for the same alert.
Delivery is fire-and-forget: a session whose send fails is dropped and
nothing is replayed when it reconnects.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Set, Tuple

from fastapi import WebSocket, status

from backend.app.alerts.models import (
    AlertChannel,
    AlertStatus,
    DeliveryAttempt,
    DeliveryStatus,
    EmergencyAlert,
    _now,
)
from backend.app.core.config import settings
from backend.app.core.errors import NotificationDeliveryError, PermissionDeniedError
from backend.app.core.security import Principal

logger = logging.getLogger(__name__)

ADMINS = "admins"
POLICE = "police"
GROUPS = (ADMINS, POLICE)

ROLE_GROUPS: Dict[str, FrozenSet[str]] = {
    "admin": frozenset({ADMINS}),
    "superadmin": frozenset({ADMINS}),
    "police": frozenset({POLICE}),
}

# client → server join messages
JOIN_MESSAGES = {"admin-join": ADMINS, "police-join": POLICE}

EVENT_NEW = "new-emergency"
EVENT_STATUS = "emergency-updated"

SEND_TIMEOUT_SECONDS = 5.0


@dataclass
class OperatorSession:
    """One live dashboard connection."""
    websocket: WebSocket
    operator_id: str
    role: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    groups: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=_now)
    last_activity: datetime = field(default_factory=_now)


def envelope(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": event, "data": data, "timestamp": _now().isoformat()}


class NotificationFanout:
    """
    Session registry plus the dispatch worker.

    Registry mutations hold ``_lock``; delivery works on a snapshot of the
    group membership taken under the same lock.
    """

    def __init__(
        self,
        queue_size: Optional[int] = None,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
    ):
        self._sessions: Dict[str, OperatorSession] = {}
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size or settings.FANOUT_QUEUE_SIZE)
        self._worker: Optional[asyncio.Task] = None
        self._send_timeout = send_timeout
        self.recent_attempts: Deque[DeliveryAttempt] = deque(maxlen=100)

    # ── lifecycle ───────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="alert-fanout")
        logger.info("Notification fanout started")

    async def stop(self) -> None:
        """Deliver what is already queued, then stop the worker."""
        if not self.running:
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None
        logger.info("Notification fanout stopped")

    async def flush(self) -> None:
        """Wait until every queued event has been delivered."""
        await self._queue.join()

    # ── registry ────────────────────────────────────────────────────────

    async def connect(self, websocket: WebSocket, operator: Principal) -> OperatorSession:
        """Accept the socket and register it; no group until the client joins."""
        await websocket.accept()
        session = OperatorSession(websocket=websocket, operator_id=operator.user_id, role=operator.role)
        async with self._lock:
            self._sessions[session.session_id] = session
        logger.info(
            "Operator session %s connected (%s %s)",
            session.session_id, operator.role, operator.user_id,
        )
        return session

    async def join(self, session_id: str, group: str) -> OperatorSession:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(session_id)
            allowed = ROLE_GROUPS.get(session.role, frozenset())
            if group not in allowed:
                raise PermissionDeniedError(sorted(r for r, g in ROLE_GROUPS.items() if group in g), session.role)
            session.groups.add(group)
            session.last_activity = _now()
        logger.info("Operator session %s joined %s", session_id, group)
        return session

    async def disconnect(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.info("Operator session %s disconnected", session_id)

    async def touch(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_activity = _now()

    def session_count(self, group: Optional[str] = None) -> int:
        if group is None:
            return len(self._sessions)
        return sum(1 for s in self._sessions.values() if group in s.groups)

    # ── broadcasting ────────────────────────────────────────────────────

    def broadcast_new_alert(self, alert: EmergencyAlert) -> None:
        self._enqueue(EVENT_NEW, alert.id, alert.summary_dict())

    def broadcast_status_update(self, alert_id: str, status: AlertStatus) -> None:
        self._enqueue(EVENT_STATUS, alert_id, {"alertId": alert_id, "status": AlertStatus(status).value})

    def _enqueue(self, event: str, alert_id: str, data: Dict[str, Any]) -> None:
        if not self.running:
            raise NotificationDeliveryError(AlertChannel.LIVE_FANOUT.value, "fanout is not running", alert_id)
        try:
            self._queue.put_nowait((event, alert_id, data))
        except asyncio.QueueFull:
            raise NotificationDeliveryError(AlertChannel.LIVE_FANOUT.value, "dispatch queue is full", alert_id)

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                event, alert_id, data = item
                try:
                    await self.deliver(event, alert_id, data)
                except Exception:
                    logger.exception("Fanout delivery of %s for %s crashed", event, alert_id)
            finally:
                self._queue.task_done()

    async def deliver(self, event: str, alert_id: Optional[str], data: Dict[str, Any]) -> DeliveryAttempt:
        """Push one event to every session in any operator group."""
        attempt = DeliveryAttempt(channel=AlertChannel.LIVE_FANOUT, event=event, alert_id=alert_id)

        async with self._lock:
            targets = [s for s in self._sessions.values() if s.groups.intersection(GROUPS)]
        attempt.recipients = len(targets)

        if not targets:
            attempt.finish(DeliveryStatus.SKIPPED, "no operator sessions")
        else:
            message = envelope(event, data)
            results = await asyncio.gather(*(self._send(s, message) for s in targets))
            dead = [session for session, ok in results if not ok]
            for session in dead:
                await self.disconnect(session.session_id)
                await self._close(session)
            attempt.failed_recipients = len(dead)
            if not dead:
                attempt.finish(DeliveryStatus.DELIVERED)
            elif len(dead) < len(targets):
                attempt.finish(DeliveryStatus.PARTIAL, f"{len(dead)} session(s) dropped")
            else:
                attempt.finish(DeliveryStatus.FAILED, "all sessions dropped")

        self.recent_attempts.append(attempt)
        logger.info(
            "Fanout %s for %s: %s (%d/%d)",
            event, alert_id, attempt.status.value,
            attempt.recipients - attempt.failed_recipients, attempt.recipients,
            extra={"alert_id": alert_id, "channel": attempt.channel.value, "session_count": attempt.recipients},
        )
        return attempt

    async def _send(self, session: OperatorSession, message: Dict[str, Any]) -> Tuple[OperatorSession, bool]:
        try:
            await asyncio.wait_for(session.websocket.send_json(message), timeout=self._send_timeout)
            return session, True
        except Exception as e:
            logger.warning("Dropping operator session %s: %r", session.session_id, e)
            return session, False

    async def _close(self, session: OperatorSession) -> None:
        """Close a dropped session's socket so the dashboard reconnects."""
        try:
            await asyncio.wait_for(
                session.websocket.close(code=status.WS_1011_INTERNAL_ERROR),
                timeout=self._send_timeout,
            )
        except Exception as e:
            logger.debug("Socket for session %s already gone: %r", session.session_id, e)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [
            {
                "sessionId": s.session_id,
                "operatorId": s.operator_id,
                "role": s.role,
                "groups": sorted(s.groups),
                "connectedAt": s.connected_at.isoformat(),
            }
            for s in self._sessions.values()
        ]
