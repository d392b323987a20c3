"""Record key schema."""

from datetime import date

CURRENT_USER = "currentUser"


def caregiver(email: str) -> str:
    return f"caregiver:{email}"


def active_patient(caregiver_email: str) -> str:
    return f"activePatient:{caregiver_email}"


def last_deactivation(caregiver_email: str) -> str:
    return f"lastDeactivation:{caregiver_email}"


def home_location(actor_email: str) -> str:
    return f"homeLocation:{actor_email}"


def current_location(actor_email: str) -> str:
    return f"currentLocation:{actor_email}"


def reminders(patient_email: str) -> str:
    return f"reminders:{patient_email}"


def location_alert(actor_email: str, day: date) -> str:
    return f"locationAlert:{actor_email}:{day.isoformat()}"


def profile_image_backup(email: str) -> str:
    return f"profileImageBackup:{email}"


def connected_patients(caregiver_email: str) -> str:
    return f"connectedPatients:{caregiver_email}"


def patient_caregiver(patient_email: str) -> str:
    return f"patientCaregiver:{patient_email}"


def caregiver_notifications(caregiver_email: str) -> str:
    return f"caregiverNotifications:{caregiver_email}"
