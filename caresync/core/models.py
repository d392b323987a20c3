"""Pydantic domain models for CareSync."""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List
from uuid import uuid4


def normalize_email(email: Optional[str]) -> str:
    """Lower-case and strip an e-mail address; empty string for missing values."""
    return email.strip().lower() if email else ""


def new_reminder_id() -> str:
    return f"reminder_{uuid4().hex[:12]}"


class VerificationResult(str, Enum):
    """Outcome of asking the remote authority whether a relationship exists."""

    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    UNKNOWN = "unknown"  # Network failure or ambiguous answer


class SafetyStatus(str, Enum):
    """Geofence classification of a tracked actor."""

    AT_HOME = "at_home"
    WITHIN_SAFE_AREA = "within_safe_area"
    OUTSIDE_SAFE_AREA = "outside_safe_area"


class Recurrence(str, Enum):
    """Reminder recurrence types."""

    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"  # Stored only, never expanded


class LocationSample(BaseModel):
    """A position of a tracked actor, or a home anchor."""

    model_config = ConfigDict(extra="ignore")

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    timestamp: datetime
    address: Optional[str] = None
    set_by_caregiver: bool = False


class MedicalInfo(BaseModel):
    """Free-text medical details kept on a caregiver profile."""

    conditions: str = ""
    medications: str = ""
    allergies: str = ""
    blood_type: str = ""


class CaregiverRecord(BaseModel):
    """Stored caregiver profile, keyed by normalized e-mail."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str = ""
    email: str
    token: str = ""
    profile_image: Optional[str] = None
    phone: str = ""
    address: str = ""
    age: str = ""
    patient_email: Optional[str] = None
    medical_info: MedicalInfo = Field(default_factory=MedicalInfo)
    home_location: Optional[LocationSample] = None
    updated_at: Optional[datetime] = None


class PatientRef(BaseModel):
    """The patient currently selected for a caregiver session."""

    model_config = ConfigDict(extra="ignore")

    email: str
    name: str = ""
    id: str = ""


class Reminder(BaseModel):
    """Reminder template or dated instance of a recurring series."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_reminder_id)
    title: str
    time: str = ""
    recurrence: Recurrence = Recurrence.NONE
    recurrence_days: List[str] = Field(default_factory=list)
    date: Optional[str] = None  # YYYY-MM-DD, local calendar day
    completed: bool = False
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    parent_reminder_id: Optional[str] = None
    is_persistent: bool = True
    for_patient: Optional[str] = None
    added_by_caregiver: bool = False
    caregiver_email: Optional[str] = None
    time_in_ms: Optional[int] = None
    date_added: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def series_id(self) -> str:
        return self.parent_reminder_id or self.id


class AlertPayload(BaseModel):
    """Geofence alert handed to the notification collaborator."""

    model_config = ConfigDict(populate_by_name=True)

    to: str
    subject: str
    body: str
    distance_meters: int = Field(..., alias="distanceMeters")
    timestamp: str = Field(..., alias="timestampISO8601")


class AlertDecision(BaseModel):
    """What maybe_alert did for one crossing."""

    suppressed: bool = False
    delivered: bool = False
    payload: Optional[AlertPayload] = None


class GeofenceReading(BaseModel):
    """Distance of an actor from home and the resulting status."""

    actor_email: str
    distance_meters: float
    status: SafetyStatus
    current: LocationSample
    home: LocationSample


class CaregiverNotification(BaseModel):
    """In-app notification stored for a caregiver."""

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    timestamp: datetime
