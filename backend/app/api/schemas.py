"""
Pydantic schemas for the emergency alert API.

Wire names are camelCase to match the mobile and dashboard clients;
attributes are snake_case. Separated from the route handlers so tests and
the WebSocket handler can reuse them.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.app.alerts.models import (
    DESCRIPTION_MAX_LENGTH,
    NOTES_MAX_LENGTH,
    AlertStatus,
    EmergencyType,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class CoordinatesInput(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0, examples=[13.0827])
    lng: float = Field(..., ge=-180.0, le=180.0, examples=[80.2707])


class ContactInfoInput(BaseModel):
    """Optional, reporter opts in to being contacted."""
    phone: Optional[str] = Field(None, max_length=32, examples=["+919876543210"])
    email: Optional[str] = Field(None, max_length=254, examples=["student@campus.edu"])


class AlertSubmitRequest(_CamelModel):
    """Request body for POST /api/v1/emergency/alert."""
    location_id: Optional[str] = Field(None, alias="locationId", max_length=64, examples=["library"])
    building: Optional[str] = Field(None, max_length=200)
    area: Optional[str] = Field(None, max_length=200)
    coordinates: Optional[CoordinatesInput] = None
    emergency_type: EmergencyType = Field(EmergencyType.OTHER, alias="emergencyType")
    description: Optional[str] = Field(None, max_length=DESCRIPTION_MAX_LENGTH)
    contact_info: Optional[ContactInfoInput] = Field(None, alias="contactInfo")
    campus_token: Optional[str] = Field(
        None, alias="campusToken", max_length=512,
        description="Device token issued by the campus app; hashed, never stored raw",
    )

    @field_validator("emergency_type", mode="before")
    @classmethod
    def _default_type(cls, v):
        return EmergencyType.OTHER if v in (None, "") else v


class TransitionRequest(_CamelModel):
    """Request body for PATCH /api/v1/emergency/{alert_id}."""
    status: Optional[AlertStatus] = None
    acknowledge: bool = False
    admin_notes: Optional[str] = Field(None, alias="adminNotes", max_length=NOTES_MAX_LENGTH)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class SubmitAlertResponse(_CamelModel):
    message: str = "Emergency alert sent successfully"
    alert_id: str = Field(..., alias="alertId")
    timestamp: str


class ActiveStatsResponse(_CamelModel):
    active: int
    investigating: int
    total_active: int = Field(..., alias="totalActive")


class LocationCount(BaseModel):
    building: Optional[str]
    count: int


class LocationStatsResponse(BaseModel):
    locations: List[LocationCount]
