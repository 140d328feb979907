"""
store.py — Durable storage and queries for emergency alerts.

All writes that can race between operators are single conditional UPDATE
statements, never read-then-write:

    acknowledge   UPDATE ... WHERE id = :id
                               AND acknowledged_at IS NULL
                               AND status IN ('active', 'investigating')
    status        UPDATE ... WHERE id = :id
                               AND status IN (<allowed predecessors>)

A zero row count is then disambiguated with a read: unknown id, a
forbidden transition, or a same-status no-op.

Connectivity failures from the driver surface as ServiceUnavailableError.
"""

from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.alerts.abuse_guard import hash_campus_token
from backend.app.alerts.models import (
    ACKNOWLEDGEABLE_STATUSES,
    ALLOWED_TRANSITIONS,
    DESCRIPTION_MAX_LENGTH,
    NOTES_MAX_LENGTH,
    AlertDraft,
    AlertStatus,
    EmergencyAlert,
    EmergencyType,
    TransitionResult,
    _generate_id,
    _now,
    location_name,
)
from backend.app.core.database import async_session_factory
from backend.app.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
OPERATOR_LIST_LIMIT = 100
MAX_LIST_LIMIT = 500

LOCATION_REQUIRED_MESSAGE = (
    "Location selection is required for emergency alerts. "
    "Please select a location on the campus map."
)


def _storage_errors(fn: Callable) -> Callable:
    """Translate driver connectivity failures into ServiceUnavailableError."""
    @wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.error("Alert storage unavailable in %s: %s", fn.__name__, exc)
            raise ServiceUnavailableError("alert-store", str(exc)) from exc
    return wrapper


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class AlertStore:
    """CRUD and dashboard queries over EmergencyAlert rows."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or async_session_factory

    # ── create ──────────────────────────────────────────────────────────

    @_storage_errors
    async def create(self, draft: AlertDraft) -> EmergencyAlert:
        """Persist a new alert in the ``active`` state."""
        if not draft.has_location:
            raise ValidationError(LOCATION_REQUIRED_MESSAGE, field="location")
        if not draft.reporter or not draft.reporter.user_id:
            raise ValidationError("Reporter identity is required", field="reportedBy")

        description = _clean(draft.description)
        if description and len(description) > DESCRIPTION_MAX_LENGTH:
            raise ValidationError(
                f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters",
                field="description",
            )

        location_id = _clean(draft.location_id)
        contact_phone = _clean(draft.contact_phone)
        contact_email = _clean(draft.contact_email)
        if contact_email:
            contact_email = contact_email.lower()

        alert = EmergencyAlert(
            id=_generate_id(),
            timestamp=_now(),
            location_id=location_id,
            building=_clean(draft.building) or location_name(location_id),
            area=_clean(draft.area),
            latitude=draft.latitude,
            longitude=draft.longitude,
            emergency_type=EmergencyType(draft.emergency_type).value,
            description=description,
            reporter_user_id=draft.reporter.user_id,
            reporter_name=draft.reporter.name,
            reporter_campus_id=draft.reporter.campus_id,
            reporter_role=draft.reporter.role,
            is_verified_device=bool(draft.campus_token),
            campus_token_hash=hash_campus_token(draft.campus_token),
            device_fingerprint=draft.device_fingerprint,
            contact_provided=bool(contact_phone or contact_email),
            contact_phone=contact_phone,
            contact_email=contact_email,
            status=AlertStatus.ACTIVE.value,
        )
        alert.updated_at = alert.timestamp

        async with self._session_factory() as session:
            async with session.begin():
                session.add(alert)

        logger.info(
            "Stored alert %s [%s] at %s",
            alert.id, alert.emergency_type, alert.location_label,
            extra={"alert_id": alert.id, "emergency_type": alert.emergency_type},
        )
        return alert

    # ── reads ───────────────────────────────────────────────────────────

    @_storage_errors
    async def get(self, alert_id: str) -> EmergencyAlert:
        async with self._session_factory() as session:
            alert = await session.get(EmergencyAlert, alert_id)
        if alert is None:
            raise NotFoundError("EmergencyAlert", id=alert_id)
        return alert

    @_storage_errors
    async def list(
        self,
        status: Optional[Union[AlertStatus, str]] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[EmergencyAlert]:
        """Alerts newest-first, optionally filtered by status."""
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        query = select(EmergencyAlert)
        if status is not None:
            query = query.where(EmergencyAlert.status == AlertStatus(status).value)
        query = query.order_by(
            EmergencyAlert.timestamp.desc(), EmergencyAlert.id.desc()
        ).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    @_storage_errors
    async def count_by_status(self) -> Dict[str, int]:
        """Open-alert counters for the operator dashboard badge."""
        query = select(EmergencyAlert.status, func.count()).group_by(EmergencyAlert.status)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).all()

        counts = {s.value: 0 for s in AlertStatus}
        for status, count in rows:
            counts[status] = count
        return {
            "active": counts[AlertStatus.ACTIVE.value],
            "investigating": counts[AlertStatus.INVESTIGATING.value],
            "totalActive": counts[AlertStatus.ACTIVE.value] + counts[AlertStatus.INVESTIGATING.value],
            "resolved": counts[AlertStatus.RESOLVED.value],
            "falseAlarm": counts[AlertStatus.FALSE_ALARM.value],
        }

    @_storage_errors
    async def count_by_location(
        self, status: Optional[Union[AlertStatus, str]] = None
    ) -> List[Dict[str, Any]]:
        """Alert counts per building, busiest first."""
        query = select(EmergencyAlert.building, func.count().label("count"))
        if status is not None:
            query = query.where(EmergencyAlert.status == AlertStatus(status).value)
        query = query.group_by(EmergencyAlert.building).order_by(
            func.count().desc(), EmergencyAlert.building
        )
        async with self._session_factory() as session:
            rows = (await session.execute(query)).all()
        return [{"building": building, "count": count} for building, count in rows]

    @_storage_errors
    async def ping(self) -> bool:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True

    # ── updates ─────────────────────────────────────────────────────────

    @_storage_errors
    async def update_status(
        self,
        alert_id: str,
        status: Optional[Union[AlertStatus, str]] = None,
        *,
        operator_id: Optional[str] = None,
        acknowledge: bool = False,
        notes: Optional[str] = None,
    ) -> TransitionResult:
        """
        Apply an operator's change to one alert.

        Acknowledgement is applied before the status change so an alert can
        be acknowledged and closed in one request. Re-acknowledging, or
        acknowledging a closed alert, is a no-op. Requesting the current
        status is a no-op. Any other transition outside the lifecycle table
        raises InvalidTransitionError and nothing is written.
        """
        target = AlertStatus(status) if status is not None else None
        if notes is not None and len(notes) > NOTES_MAX_LENGTH:
            raise ValidationError(
                f"Notes cannot exceed {NOTES_MAX_LENGTH} characters", field="adminNotes",
            )

        acknowledged = status_changed = notes_updated = False
        now = _now()

        async with self._session_factory() as session:
            async with session.begin():
                if acknowledge:
                    result = await session.execute(
                        update(EmergencyAlert)
                        .where(
                            EmergencyAlert.id == alert_id,
                            EmergencyAlert.acknowledged_at.is_(None),
                            EmergencyAlert.status.in_([s.value for s in ACKNOWLEDGEABLE_STATUSES]),
                        )
                        .values(acknowledged_by=operator_id, acknowledged_at=now, updated_at=now)
                    )
                    acknowledged = result.rowcount == 1

                if target is not None:
                    status_changed = await self._apply_status(session, alert_id, target, operator_id, now)

                if notes is not None:
                    result = await session.execute(
                        update(EmergencyAlert)
                        .where(EmergencyAlert.id == alert_id)
                        .values(admin_notes=notes, updated_at=now)
                    )
                    notes_updated = result.rowcount == 1

                alert = await session.get(EmergencyAlert, alert_id, populate_existing=True)
                if alert is None:
                    raise NotFoundError("EmergencyAlert", id=alert_id)

        if status_changed or acknowledged:
            logger.info(
                "Alert %s → status=%s acknowledged=%s by %s",
                alert_id, alert.status, acknowledged, operator_id,
                extra={"alert_id": alert_id, "status": alert.status},
            )
        return TransitionResult(
            alert=alert,
            status_changed=status_changed,
            acknowledged=acknowledged,
            notes_updated=notes_updated,
        )

    async def _apply_status(
        self,
        session: AsyncSession,
        alert_id: str,
        target: AlertStatus,
        operator_id: Optional[str],
        now: datetime,
    ) -> bool:
        values: Dict[str, Any] = {"status": target.value, "updated_at": now}
        if target.is_terminal:
            values.update(resolved_at=now, resolved_by=operator_id)

        predecessors = ALLOWED_TRANSITIONS[target]
        if predecessors:
            result = await session.execute(
                update(EmergencyAlert)
                .where(
                    EmergencyAlert.id == alert_id,
                    EmergencyAlert.status.in_([s.value for s in predecessors]),
                )
                .values(**values)
            )
            if result.rowcount == 1:
                return True

        current = (
            await session.execute(
                select(EmergencyAlert.status).where(EmergencyAlert.id == alert_id)
            )
        ).scalar_one_or_none()
        if current is None:
            raise NotFoundError("EmergencyAlert", id=alert_id)
        if current != target.value:
            raise InvalidTransitionError(alert_id, current, target.value)
        return False
