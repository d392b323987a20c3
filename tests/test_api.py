"""Tests for API endpoints."""

import pytest
from httpx import AsyncClient

PATIENT = "pat@example.com"
CAREGIVER = "cg@example.com"


async def login(client: AsyncClient, **overrides):
    body = {"email": CAREGIVER, "token": "tok-1", "name": "Casey", "patient_email": PATIENT}
    body.update(overrides)
    return await client.post("/api/v1/session/login", json=body)


@pytest.fixture
async def active_client(test_client, authority):
    """Client with a logged-in caregiver whose patient is active."""
    authority.exists[PATIENT] = True
    assert (await login(test_client)).status_code == 200
    response = await test_client.put("/api/v1/session/active-patient", json={"email": PATIENT, "name": "Pat"})
    assert response.status_code == 200
    return test_client


@pytest.mark.asyncio
async def test_root_endpoint(test_client):
    """Test root endpoint."""
    response = await test_client.get("/")

    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "CareSync API"
    assert data["version"] == "1.0.0"


@pytest.mark.asyncio
async def test_health_check(test_client):
    """Test health check endpoint."""
    response = await test_client.get("/api/v1/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "memory"


@pytest.mark.asyncio
async def test_login_validation(test_client):
    """Missing or blank e-mail is a validation error."""
    assert (await test_client.post("/api/v1/session/login", json={"token": "t"})).status_code == 422
    assert (await login(test_client, email="   ")).status_code == 422


@pytest.mark.asyncio
async def test_login_and_status(test_client, authority):
    authority.exists[PATIENT] = True

    response = await login(test_client)

    assert response.status_code == 200
    data = response.json()
    assert data["caregiver"]["email"] == CAREGIVER
    assert data["caregiver"]["patient_email"] == PATIENT
    assert data["active_patient"] is None

    status = (await test_client.get("/api/v1/session")).json()
    assert status["event_sequence"] == data["event_sequence"]


@pytest.mark.asyncio
async def test_login_drops_deleted_patient(test_client, authority):
    authority.exists[PATIENT] = False

    data = (await login(test_client)).json()

    assert data["caregiver"]["patient_email"] is None


@pytest.mark.asyncio
async def test_active_patient_requires_session(test_client):
    response = await test_client.put("/api/v1/session/active-patient", json={"email": PATIENT})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_reactivation_window_rejects_quick_toggle(active_client):
    cleared = await active_client.delete("/api/v1/session/active-patient")
    assert cleared.status_code == 200
    assert cleared.json()["active_patient"] is None

    response = await active_client.put("/api/v1/session/active-patient", json={"email": PATIENT})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_refresh_and_logout(active_client):
    refreshed = await active_client.post("/api/v1/session/refresh")
    assert refreshed.json()["active_patient"]["email"] == PATIENT

    logged_out = await active_client.post("/api/v1/session/logout")
    assert logged_out.json()["caregiver"] is None


@pytest.mark.asyncio
async def test_update_caregiver_profile(active_client):
    response = await active_client.patch("/api/v1/caregiver", json={"name": "Casey R.", "phone": "555-0101"})

    assert response.status_code == 200
    assert response.json()["caregiver"]["name"] == "Casey R."


@pytest.mark.asyncio
async def test_remove_active_patient_blocks_reactivation(active_client):
    response = await active_client.delete(f"/api/v1/caregiver/patients/{PATIENT}")

    assert response.status_code == 200
    data = response.json()
    assert data["active_patient"] is None
    assert data["block_auto_reactivation"] is True


@pytest.mark.asyncio
async def test_location_ping_outside_triggers_alert(active_client, sender):
    home = await active_client.put(f"/api/v1/actors/{PATIENT}/home", json={"latitude": 40.0, "longitude": -74.0})
    assert home.status_code == 200

    response = await active_client.post(
        f"/api/v1/actors/{PATIENT}/location",
        json={"latitude": 40.01, "longitude": -74.0}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["reading"]["status"] == "outside_safe_area"
    assert data["alert"]["delivered"] is True
    assert sender.payloads[0].to == CAREGIVER

    again = await active_client.post(f"/api/v1/actors/{PATIENT}/alert")
    assert again.json()["alert"]["suppressed"] is True

    forced = await active_client.post(f"/api/v1/actors/{PATIENT}/alert", params={"force": "true"})
    assert forced.json()["alert"]["delivered"] is True
    assert len(sender.payloads) == 2


@pytest.mark.asyncio
async def test_safety_unknown_without_positions(test_client):
    response = await test_client.get(f"/api/v1/actors/{PATIENT}/safety")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_reminder_requires_active_patient(test_client):
    response = await test_client.post("/api/v1/reminders", json={"title": "Walk", "time": "09:00"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_reminder_lifecycle(active_client):
    created = await active_client.post(
        "/api/v1/reminders",
        json={"title": "Morning pills", "time": "08:00", "recurrence": "daily"}
    )
    assert created.status_code == 201
    reminder = created.json()
    assert reminder["for_patient"] == PATIENT
    assert reminder["caregiver_email"] == CAREGIVER

    completed = await active_client.post(f"/api/v1/reminders/{reminder['id']}/complete", json={})
    assert completed.status_code == 200
    assert completed.json()["completed"] is True

    listing = (await active_client.get("/api/v1/reminders")).json()
    assert listing["patient_email"] == PATIENT
    assert listing["total"] == 2

    assert (await active_client.delete(f"/api/v1/reminders/{reminder['id']}")).status_code == 204
    assert (await active_client.delete(f"/api/v1/reminders/{reminder['id']}")).status_code == 404
    assert (await active_client.post("/api/v1/reminders/missing/complete", json={})).status_code == 404
