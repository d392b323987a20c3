"""FastAPI routes for caregiver sessions, geofencing and reminders."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from caresync.api.schemas import (
    AddReminderRequest,
    CompleteReminderRequest,
    HomeAnchorRequest,
    LocationPingRequest,
    LoginRequest,
    ReminderListResponse,
    SafetyResponse,
    SessionStatusResponse,
    SetActivePatientRequest,
    UpdateCaregiverRequest
)
from caresync.core.models import CaregiverNotification, LocationSample, PatientRef, Reminder
from caresync.services import CareServices

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["caresync"])


# Dependency injection for the wired services
async def get_services(request: Request) -> CareServices:
    """Get the services built at startup."""
    return request.app.state.services


def session_status(services: CareServices) -> SessionStatusResponse:
    session = services.session
    return SessionStatusResponse(
        caregiver=session.caregiver,
        active_patient=session.active_patient,
        block_auto_reactivation=session.block_auto_reactivation,
        event_sequence=services.events.sequence
    )


def require_caregiver(services: CareServices) -> str:
    if services.session.caregiver is None:
        raise HTTPException(status_code=409, detail="No caregiver logged in")
    return services.session.caregiver.email


# ---------------------------------------------------------------- session

@router.post("/session/login", response_model=SessionStatusResponse)
async def login(
    request: LoginRequest,
    services: CareServices = Depends(get_services)
) -> SessionStatusResponse:
    """
    Start a caregiver session.

    The payload is merged with any stored record; the linked patient is
    verified and disconnected only if the authority confirms it is gone.
    """
    try:
        record = await services.session.login(request.to_record())
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if record is None:
        raise HTTPException(status_code=409, detail="Session ended during login")
    return session_status(services)


@router.post("/session/logout", response_model=SessionStatusResponse)
async def logout(services: CareServices = Depends(get_services)) -> SessionStatusResponse:
    await services.session.logout()
    return session_status(services)


@router.get("/session", response_model=SessionStatusResponse)
async def get_session(services: CareServices = Depends(get_services)) -> SessionStatusResponse:
    return session_status(services)


@router.post("/session/refresh", response_model=SessionStatusResponse)
async def refresh_session(services: CareServices = Depends(get_services)) -> SessionStatusResponse:
    """Re-read the stored active patient and notify observers."""
    await services.session.refresh_status()
    return session_status(services)


@router.put("/session/active-patient", response_model=SessionStatusResponse)
async def set_active_patient(
    request: SetActivePatientRequest,
    services: CareServices = Depends(get_services)
) -> SessionStatusResponse:
    """
    Select the active patient.

    Rejected with 409 inside the reactivation window, while reactivation is
    suppressed, or when the caregiver has no linked patient.
    """
    require_caregiver(services)
    accepted = await services.session.set_active_patient(PatientRef(**request.model_dump()))
    if not accepted:
        raise HTTPException(status_code=409, detail="Active patient change rejected")
    return session_status(services)


@router.delete("/session/active-patient", response_model=SessionStatusResponse)
async def clear_active_patient(services: CareServices = Depends(get_services)) -> SessionStatusResponse:
    require_caregiver(services)
    if not await services.session.clear_active_patient():
        raise HTTPException(status_code=503, detail="Failed to clear active patient")
    return session_status(services)


# -------------------------------------------------------------- caregiver

@router.patch("/caregiver", response_model=SessionStatusResponse)
async def update_caregiver(
    request: UpdateCaregiverRequest,
    services: CareServices = Depends(get_services)
) -> SessionStatusResponse:
    require_caregiver(services)
    try:
        saved = await services.session.update_caregiver(request.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not saved:
        raise HTTPException(status_code=503, detail="Failed to save caregiver data")
    return session_status(services)


@router.delete("/caregiver/patients/{patient_email}", response_model=SessionStatusResponse)
async def remove_patient(
    patient_email: str,
    services: CareServices = Depends(get_services)
) -> SessionStatusResponse:
    """Remove a patient; removing the active one briefly blocks reactivation."""
    require_caregiver(services)
    if not await services.session.remove_patient(patient_email):
        raise HTTPException(status_code=503, detail="Failed to remove patient")
    return session_status(services)


@router.get("/caregiver/notifications", response_model=List[CaregiverNotification])
async def list_notifications(services: CareServices = Depends(get_services)) -> List[CaregiverNotification]:
    email = require_caregiver(services)
    try:
        return await services.inbox.list(email)
    except Exception as e:
        logger.error(f"Failed to list notifications: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to list notifications: {str(e)}")


# --------------------------------------------------------------- geofence

@router.put("/actors/{actor_email}/home", response_model=LocationSample)
async def set_home(
    actor_email: str,
    request: HomeAnchorRequest,
    services: CareServices = Depends(get_services)
) -> LocationSample:
    anchor = await services.geofence.set_home_anchor(
        actor_email,
        request.latitude,
        request.longitude,
        address=request.address,
        set_by_caregiver=request.set_by_caregiver
    )
    if anchor is None:
        raise HTTPException(status_code=503, detail="Failed to save home location")
    return anchor


@router.get("/actors/{actor_email}/home", response_model=LocationSample)
async def get_home(
    actor_email: str,
    services: CareServices = Depends(get_services)
) -> LocationSample:
    anchor = await services.geofence.home_anchor(actor_email)
    if anchor is None:
        raise HTTPException(status_code=404, detail="No home location set")
    return anchor


@router.post("/actors/{actor_email}/location", response_model=SafetyResponse)
async def report_location(
    actor_email: str,
    request: LocationPingRequest,
    services: CareServices = Depends(get_services)
) -> SafetyResponse:
    """
    Record an actor's current position.

    With ``check`` set the position is evaluated against home and an alert
    is raised if the actor is outside the safe area.
    """
    await services.geofence.record_location(actor_email, request.latitude, request.longitude)
    if not request.check:
        return SafetyResponse()
    reading, alert = await services.geofence.check(actor_email)
    return SafetyResponse(reading=reading, alert=alert)


@router.get("/actors/{actor_email}/safety", response_model=SafetyResponse)
async def get_safety(
    actor_email: str,
    services: CareServices = Depends(get_services)
) -> SafetyResponse:
    reading = await services.geofence.evaluate(actor_email)
    if reading is None:
        raise HTTPException(status_code=404, detail="Home or current location unknown")
    return SafetyResponse(reading=reading)


@router.post("/actors/{actor_email}/alert", response_model=SafetyResponse)
async def send_alert(
    actor_email: str,
    force: bool = False,
    services: CareServices = Depends(get_services)
) -> SafetyResponse:
    """Evaluate an actor and alert their caregiver; ``force`` skips suppression."""
    reading, alert = await services.geofence.check(actor_email, force=force)
    if reading is None:
        raise HTTPException(status_code=404, detail="Home or current location unknown")
    return SafetyResponse(reading=reading, alert=alert)


# -------------------------------------------------------------- reminders

@router.get("/reminders", response_model=ReminderListResponse)
async def list_reminders(services: CareServices = Depends(get_services)) -> ReminderListResponse:
    scheduler = services.scheduler
    return ReminderListResponse(
        patient_email=scheduler.patient_email,
        reminders=scheduler.reminders,
        total=len(scheduler.reminders)
    )


@router.post("/reminders", response_model=Reminder, status_code=201)
async def add_reminder(
    request: AddReminderRequest,
    services: CareServices = Depends(get_services)
) -> Reminder:
    try:
        return await services.scheduler.add_reminder(request.model_dump(mode="json"))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/reminders/{reminder_id}/complete", response_model=Reminder)
async def complete_reminder(
    reminder_id: str,
    request: CompleteReminderRequest,
    services: CareServices = Depends(get_services)
) -> Reminder:
    reminder = await services.scheduler.complete(reminder_id, completed_by=request.completed_by)
    if reminder is None:
        raise HTTPException(status_code=404, detail=f"Reminder {reminder_id} not found")
    return reminder


@router.delete("/reminders/{reminder_id}", status_code=204)
async def delete_reminder(
    reminder_id: str,
    services: CareServices = Depends(get_services)
) -> None:
    if not await services.scheduler.delete_reminder(reminder_id):
        raise HTTPException(status_code=404, detail=f"Reminder {reminder_id} not found")


@router.get("/health")
async def health_check(services: CareServices = Depends(get_services)):
    """Health check endpoint."""
    database = "memory"
    if services.pool is not None:
        database = "connected" if await services.pool.ping() else "unreachable"
    return {
        "status": "healthy",
        "service": "caresync",
        "version": "1.0.0",
        "database": database
    }
