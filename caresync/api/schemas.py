"""API request/response schemas."""

from pydantic import BaseModel, Field
from typing import List, Optional

from caresync.core.models import (
    AlertDecision,
    CaregiverRecord,
    GeofenceReading,
    MedicalInfo,
    PatientRef,
    Recurrence,
    Reminder
)


class LoginRequest(BaseModel):
    """Caregiver record as returned by the authentication service."""

    email: str = Field(..., min_length=1)
    token: str = ""
    patient_email: Optional[str] = None
    id: str = ""
    name: str = ""
    profile_image: Optional[str] = None
    phone: str = ""
    address: str = ""
    age: str = ""
    medical_info: MedicalInfo = Field(default_factory=MedicalInfo)

    def to_record(self) -> CaregiverRecord:
        return CaregiverRecord.model_validate(self.model_dump())


class SessionStatusResponse(BaseModel):
    """Current session state."""

    caregiver: Optional[CaregiverRecord] = None
    active_patient: Optional[PatientRef] = None
    block_auto_reactivation: bool = False
    event_sequence: int = 0


class SetActivePatientRequest(BaseModel):
    """Patient to make active."""

    email: str = Field(..., min_length=1)
    name: str = ""
    id: str = ""


class UpdateCaregiverRequest(BaseModel):
    """Profile fields to change; omitted fields are left alone."""

    name: Optional[str] = None
    profile_image: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    age: Optional[str] = None
    medical_info: Optional[MedicalInfo] = None


class HomeAnchorRequest(BaseModel):
    """New home location for an actor."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None
    set_by_caregiver: Optional[bool] = None


class LocationPingRequest(BaseModel):
    """Current position reported by an actor's device."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    check: bool = True


class SafetyResponse(BaseModel):
    """Geofence reading plus the alert decision, if an alert was considered."""

    reading: Optional[GeofenceReading] = None
    alert: Optional[AlertDecision] = None


class AddReminderRequest(BaseModel):
    """New reminder for the active patient."""

    title: str = Field(..., min_length=1, max_length=200)
    time: str = ""
    recurrence: Recurrence = Recurrence.NONE
    recurrence_days: List[str] = Field(default_factory=list)
    date: Optional[str] = None
    is_persistent: Optional[bool] = None


class CompleteReminderRequest(BaseModel):
    """Who completed a reminder."""

    completed_by: str = "caregiver"


class ReminderListResponse(BaseModel):
    """Reminders of the active patient."""

    patient_email: Optional[str] = None
    reminders: List[Reminder]
    total: int
