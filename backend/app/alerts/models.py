"""
models.py — Data structures for the emergency alert subsystem.

Defines:
    • EmergencyType   — what kind of emergency was reported
    • AlertStatus     — lifecycle state
    • ALLOWED_TRANSITIONS — the lifecycle table
    • EmergencyAlert  — persisted alert (SQLAlchemy ORM)
    • AlertDraft      — validated submission, before persistence
    • ReporterSnapshot — identity copied from the reporter's token
    • AlertChannel / DeliveryStatus / DeliveryAttempt — best-effort
      notification outcomes (logged, never returned to callers)

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    active ──────────► investigating ──────┐
      │                                     ▼
      └──────────────────────────► resolved | false_alarm   (terminal)

Acknowledgement is a flag, not a state. It can be set once, by the first
operator who acknowledges, while the alert is active or investigating.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from sqlalchemy import Boolean, DateTime, Float, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base

DESCRIPTION_MAX_LENGTH = 500
NOTES_MAX_LENGTH = 1000


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class EmergencyType(str, Enum):
    MEDICAL          = "medical"
    FIRE             = "fire"
    SECURITY         = "security"
    NATURAL_DISASTER = "natural_disaster"
    OTHER            = "other"

    @property
    def label(self) -> str:
        return _EMERGENCY_LABELS[self]


_EMERGENCY_LABELS = {
    EmergencyType.MEDICAL: "Medical Emergency",
    EmergencyType.FIRE: "Fire",
    EmergencyType.SECURITY: "Security Threat",
    EmergencyType.NATURAL_DISASTER: "Natural Disaster",
    EmergencyType.OTHER: "Other Emergency",
}


class AlertStatus(str, Enum):
    ACTIVE        = "active"          # initial
    INVESTIGATING = "investigating"
    RESOLVED      = "resolved"        # terminal
    FALSE_ALARM   = "false_alarm"     # terminal

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[AlertStatus] = frozenset(
    {AlertStatus.RESOLVED, AlertStatus.FALSE_ALARM}
)

ACKNOWLEDGEABLE_STATUSES: FrozenSet[AlertStatus] = frozenset(
    {AlertStatus.ACTIVE, AlertStatus.INVESTIGATING}
)

# target status → statuses it may be entered from
ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.ACTIVE: frozenset(),
    AlertStatus.INVESTIGATING: frozenset({AlertStatus.ACTIVE}),
    AlertStatus.RESOLVED: frozenset({AlertStatus.ACTIVE, AlertStatus.INVESTIGATING}),
    AlertStatus.FALSE_ALARM: frozenset({AlertStatus.ACTIVE, AlertStatus.INVESTIGATING}),
}


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return current in ALLOWED_TRANSITIONS[target]


class AlertChannel(str, Enum):
    """Best-effort notification channels."""
    LIVE_FANOUT = "live_fanout"
    EMAIL       = "email"


class DeliveryStatus(str, Enum):
    PENDING   = "pending"
    SENDING   = "sending"
    DELIVERED = "delivered"   # handed to every target (sessions / SMTP relay)
    PARTIAL   = "partial"     # some sessions dropped during the send
    FAILED    = "failed"
    SKIPPED   = "skipped"     # nothing to deliver to, or channel not configured


# ═══════════════════════════════════════════════════════════════════════════
# Campus locations
# ═══════════════════════════════════════════════════════════════════════════

CAMPUS_LOCATIONS: Dict[str, str] = {
    "cafe": "Café",
    "library": "Library",
    "clinic": "Clinic",
    "male_dorm_1": "Male Dormitory 1",
    "male_dorm_2": "Male Dormitory 2",
    "female_dorm": "Female Dormitory",
    "registrar": "Registrar",
    "main_building": "Main Building",
    "launch": "Launch Area",
    "other": "Other Location",
}


def location_name(location_id: Optional[str]) -> Optional[str]:
    if not location_id:
        return None
    return CAMPUS_LOCATIONS.get(location_id, location_id)


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return f"EMG-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# ═══════════════════════════════════════════════════════════════════════════
# Submission-side structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ReporterSnapshot:
    """Reporter identity at submission time; copied, never referenced live."""
    user_id: str
    name: Optional[str] = None
    campus_id: Optional[str] = None
    role: Optional[str] = None


@dataclass
class AlertDraft:
    """
    An alert as submitted, before it is stored.

    Attributes
    ----------
    location_id, building, area : str | None
        At least one of location_id / building must be non-empty.
    latitude, longitude : float | None
        Optional map pin.
    contact_phone, contact_email : str | None
        Opt-in contact details.
    campus_token : str | None
        Raw campus verification token; only its hash is stored.
    device_fingerprint : str | None
        Abuse-tracking key derived by the abuse guard.
    """
    reporter: ReporterSnapshot
    emergency_type: EmergencyType = EmergencyType.OTHER
    location_id: Optional[str] = None
    building: Optional[str] = None
    area: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    description: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    campus_token: Optional[str] = None
    device_fingerprint: Optional[str] = None

    @property
    def has_location(self) -> bool:
        return bool((self.location_id or "").strip() or (self.building or "").strip())


# ═══════════════════════════════════════════════════════════════════════════
# Persisted alert
# ═══════════════════════════════════════════════════════════════════════════

class EmergencyAlert(Base):
    __tablename__ = "emergency_alerts"
    __table_args__ = (
        Index("ix_emergency_alerts_status_timestamp", "status", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(16), primary_key=True, default=_generate_id)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    location_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    building: Mapped[Optional[str]] = mapped_column(String(200), index=True)
    area: Mapped[Optional[str]] = mapped_column(String(200))
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    emergency_type: Mapped[str] = mapped_column(String(32), nullable=False, default=EmergencyType.OTHER.value)
    description: Mapped[Optional[str]] = mapped_column(String(DESCRIPTION_MAX_LENGTH))

    reporter_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reporter_name: Mapped[Optional[str]] = mapped_column(String(200))
    reporter_campus_id: Mapped[Optional[str]] = mapped_column(String(64))
    reporter_role: Mapped[Optional[str]] = mapped_column(String(32))

    is_verified_device: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    campus_token_hash: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    device_fingerprint: Mapped[Optional[str]] = mapped_column(String(128))

    contact_provided: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    contact_phone: Mapped[Optional[str]] = mapped_column(String(32))
    contact_email: Mapped[Optional[str]] = mapped_column(String(254))

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=AlertStatus.ACTIVE.value)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(64))
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    admin_notes: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    @property
    def status_enum(self) -> AlertStatus:
        return AlertStatus(self.status)

    @property
    def location_label(self) -> str:
        return location_name(self.location_id) or self.building or "Unknown Location"

    def location_dict(self) -> Dict[str, Any]:
        coordinates = None
        if self.latitude is not None and self.longitude is not None:
            coordinates = {"lat": self.latitude, "lng": self.longitude}
        return {
            "locationId": self.location_id,
            "building": self.building,
            "area": self.area,
            "coordinates": coordinates,
        }

    def summary_dict(self) -> Dict[str, Any]:
        """Payload of the live ``new-emergency`` event."""
        return {
            "alertId": self.id,
            "location": self.location_dict(),
            "emergencyType": self.emergency_type,
            "timestamp": _iso(self.timestamp),
            "description": self.description,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "location": self.location_dict(),
            "emergencyType": self.emergency_type,
            "description": self.description,
            "reportedBy": {
                "userId": self.reporter_user_id,
                "name": self.reporter_name,
                "campusId": self.reporter_campus_id,
                "role": self.reporter_role,
            },
            "isVerifiedDevice": self.is_verified_device,
            "contactInfo": {
                "provided": self.contact_provided,
                "phone": self.contact_phone,
                "email": self.contact_email,
            },
            "status": self.status,
            "acknowledgedBy": self.acknowledged_by,
            "acknowledgedAt": _iso(self.acknowledged_at),
            "resolvedBy": self.resolved_by,
            "resolvedAt": _iso(self.resolved_at),
            "adminNotes": self.admin_notes,
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<EmergencyAlert {self.id} type={self.emergency_type} status={self.status}>"


# ═══════════════════════════════════════════════════════════════════════════
# Notification outcomes
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DeliveryAttempt:
    """Outcome of one best-effort notification; logged, never surfaced."""
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    channel: AlertChannel = AlertChannel.LIVE_FANOUT
    event: str = ""
    alert_id: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    recipients: int = 0
    failed_recipients: int = 0
    attempted_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def finish(self, status: DeliveryStatus, error: Optional[str] = None) -> "DeliveryAttempt":
        self.status = status
        self.error_message = error
        self.completed_at = _now()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "channel": self.channel.value,
            "event": self.event,
            "alert_id": self.alert_id,
            "status": self.status.value,
            "recipients": self.recipients,
            "failed_recipients": self.failed_recipients,
            "attempted_at": self.attempted_at.isoformat(),
            "completed_at": _iso(self.completed_at),
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class SubmitReceipt:
    """What the reporting client gets back."""
    alert_id: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"alertId": self.alert_id, "timestamp": _iso(self.timestamp)}


@dataclass(frozen=True)
class TransitionResult:
    """Stored record after an update, plus what actually changed."""
    alert: EmergencyAlert
    status_changed: bool = False
    acknowledged: bool = False
    notes_updated: bool = False
