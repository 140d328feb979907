"""
lifecycle.py — Intake and operator-driven state changes for emergency alerts.

═══════════════════════════════════════════════════════════════════════════
INTAKE FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Abuse guard     │  emergency_alert policy, keyed by caller
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Validate        │  location (id or building) is mandatory
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Persist         │  AlertStore.create → status "active"
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Live fanout     │  enqueue new-emergency    (failure logged)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  5. Email           │  background task          (failure logged)
    └─────────┬───────────┘
              ▼
        receipt {alertId, timestamp}

The receipt is returned as soon as step 3 commits. Steps 4 and 5 never
change the outcome the reporter sees.

═══════════════════════════════════════════════════════════════════════════
STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    active ──► investigating ──► resolved | false_alarm
      └──────────────────────────► resolved | false_alarm

Acknowledgement is a flag, settable once while active or investigating.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Union

from backend.app.alerts.abuse_guard import AbuseGuard
from backend.app.alerts.channels.email_alert import EmailEscalation
from backend.app.alerts.fanout import NotificationFanout
from backend.app.alerts.models import (
    AlertDraft,
    AlertStatus,
    DeliveryAttempt,
    EmergencyAlert,
    SubmitReceipt,
)
from backend.app.alerts.store import (
    DEFAULT_LIST_LIMIT,
    LOCATION_REQUIRED_MESSAGE,
    AlertStore,
)
from backend.app.core.errors import NotificationDeliveryError, ValidationError

logger = logging.getLogger(__name__)


class AlertLifecycleController:
    """Coordinates the guard, the store and both notification channels."""

    def __init__(
        self,
        store: AlertStore,
        guard: AbuseGuard,
        fanout: NotificationFanout,
        email: EmailEscalation,
    ):
        self.store = store
        self.guard = guard
        self.fanout = fanout
        self.email = email
        self._background: Set[asyncio.Task] = set()

    # ── intake ──────────────────────────────────────────────────────────

    async def submit(self, draft: AlertDraft, caller_key: str) -> SubmitReceipt:
        await self.guard.admit_alert(caller_key)

        if not draft.has_location:
            raise ValidationError(LOCATION_REQUIRED_MESSAGE, field="location")

        alert = await self.store.create(draft)

        try:
            self.fanout.broadcast_new_alert(alert)
        except NotificationDeliveryError as e:
            logger.warning("Live fanout skipped for %s: %s", alert.id, e.message,
                           extra={"alert_id": alert.id})

        self._spawn(self._escalate(alert), name=f"email-{alert.id}")

        logger.info(
            "Emergency alert %s submitted (%s) by %s",
            alert.id, alert.emergency_type, caller_key,
            extra={"alert_id": alert.id, "caller_key": caller_key},
        )
        return SubmitReceipt(alert_id=alert.id, timestamp=alert.timestamp)

    async def _escalate(self, alert: EmergencyAlert) -> Optional[DeliveryAttempt]:
        try:
            return await self.email.notify(alert)
        except Exception:
            logger.exception("Email escalation crashed for %s", alert.id)
            return None

    def _spawn(self, coro, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background escalations."""
        while self._background:
            await asyncio.gather(*list(self._background))

    # ── operator actions ────────────────────────────────────────────────

    async def transition(
        self,
        alert_id: str,
        *,
        status: Optional[Union[AlertStatus, str]] = None,
        acknowledge: bool = False,
        notes: Optional[str] = None,
        operator_id: Optional[str] = None,
    ) -> EmergencyAlert:
        result = await self.store.update_status(
            alert_id,
            status,
            operator_id=operator_id,
            acknowledge=acknowledge,
            notes=notes,
        )

        if result.status_changed:
            try:
                self.fanout.broadcast_status_update(alert_id, result.alert.status_enum)
            except NotificationDeliveryError as e:
                logger.warning("Status fanout skipped for %s: %s", alert_id, e.message,
                               extra={"alert_id": alert_id})
        return result.alert

    # ── reads ───────────────────────────────────────────────────────────

    async def get(self, alert_id: str) -> EmergencyAlert:
        return await self.store.get(alert_id)

    async def list(
        self,
        status: Optional[Union[AlertStatus, str]] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[EmergencyAlert]:
        return await self.store.list(status=status, limit=limit)

    async def stats(self) -> Dict[str, int]:
        return await self.store.count_by_status()

    async def location_stats(self, status: Optional[Union[AlertStatus, str]] = None) -> List[Dict[str, Any]]:
        return await self.store.count_by_location(status)
