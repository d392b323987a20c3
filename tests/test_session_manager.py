"""Tests for SessionManager."""

import asyncio
import json

import pytest
import httpx

from caresync.core.events import StatusEventKind
from caresync.core.models import CaregiverRecord, PatientRef, VerificationResult
from caresync.core.session_manager import merge_login
from caresync.db import keys

CAREGIVER = "cg@example.com"
PATIENT = "pat@example.com"


def login_payload(**overrides) -> CaregiverRecord:
    data = {"email": CAREGIVER, "token": "tok-1", "name": "Casey", "patient_email": PATIENT}
    data.update(overrides)
    return CaregiverRecord(**data)


def stored(store, key):
    raw = store.records.get(key)
    return json.loads(raw) if raw is not None else None


@pytest.fixture
def events_seen(services):
    seen = []

    async def listener(event):
        seen.append(event)

    services.events.subscribe(listener)
    return seen


@pytest.fixture
async def logged_in(services, authority, clock):
    """Caregiver logged in with an existing patient selected."""
    authority.exists[PATIENT] = True
    await services.session.login(login_payload())
    assert await services.session.set_active_patient(PatientRef(email=PATIENT, name="Pat"))
    return services.session


def test_merge_login_stored_data_wins_except_token_and_patient():
    stored_record = CaregiverRecord(
        email=CAREGIVER, token="old", name="Stored Name", phone="555", patient_email="old@example.com"
    )
    incoming = CaregiverRecord(email=CAREGIVER, token="new", name="Payload Name", patient_email="New@Example.com")

    merged = merge_login(stored_record, incoming)

    assert merged.name == "Stored Name"
    assert merged.phone == "555"
    assert merged.token == "new"
    assert merged.patient_email == "new@example.com"


def test_merge_login_keeps_stored_token_and_drops_patient_when_absent():
    stored_record = CaregiverRecord(email=CAREGIVER, token="old", patient_email=PATIENT)

    merged = merge_login(stored_record, CaregiverRecord(email=CAREGIVER))

    assert merged.token == "old"
    assert merged.patient_email is None


def test_merge_login_without_stored_record_uses_payload():
    incoming = CaregiverRecord(email=CAREGIVER, token="t", name="New")

    assert merge_login(None, incoming) == incoming


@pytest.mark.asyncio
async def test_login_new_caregiver_persists_record(services, store, events_seen):
    record = await services.session.login(login_payload(email="  CG@Example.com ", patient_email=None))

    assert record.email == CAREGIVER
    assert record.updated_at is not None
    assert stored(store, keys.caregiver(CAREGIVER))["name"] == "Casey"
    assert stored(store, keys.CURRENT_USER) == CAREGIVER
    assert events_seen[-1].kind is StatusEventKind.SESSION_STARTED
    assert events_seen[-1].caregiver_email == CAREGIVER


@pytest.mark.asyncio
async def test_login_requires_email(services):
    with pytest.raises(ValueError):
        await services.session.login(CaregiverRecord(email="   "))


@pytest.mark.asyncio
async def test_login_with_existing_patient_keeps_link(services, authority, store):
    authority.exists[PATIENT] = True

    record = await services.session.login(login_payload())

    assert record.patient_email == PATIENT
    assert authority.disconnects == []
    assert stored(store, keys.patient_caregiver(PATIENT)) == CAREGIVER


@pytest.mark.asyncio
async def test_login_with_deleted_patient_disconnects(services, authority, store, clock):
    authority.exists[PATIENT] = True
    await services.session.login(login_payload())
    clock.advance(seconds=10)
    assert await services.session.set_active_patient(PatientRef(email=PATIENT))
    await services.session.logout()

    authority.exists[PATIENT] = False
    record = await services.session.login(login_payload())

    assert record.patient_email is None
    assert services.session.active_patient is None
    assert keys.active_patient(CAREGIVER) not in store.records
    assert stored(store, keys.last_deactivation(CAREGIVER)) == clock().isoformat()
    assert stored(store, keys.caregiver(CAREGIVER))["patient_email"] is None
    assert authority.disconnects == [{"patientEmail": PATIENT, "caregiverEmail": CAREGIVER}]


@pytest.mark.asyncio
async def test_login_with_unreachable_authority_keeps_link(services, authority, store):
    authority.failures[PATIENT] = httpx.ConnectError("offline")

    record = await services.session.login(login_payload())

    assert record.patient_email == PATIENT
    assert authority.disconnects == []


@pytest.mark.asyncio
async def test_login_with_server_error_keeps_link(services, authority):
    authority.statuses[PATIENT] = 500

    record = await services.session.login(login_payload())

    assert record.patient_email == PATIENT


@pytest.mark.asyncio
async def test_login_merges_with_stored_record(services, authority, store):
    authority.exists[PATIENT] = True
    await services.session.login(login_payload(name="Original", phone="555-0100"))
    await services.session.logout()

    record = await services.session.login(login_payload(name="Changed", token="tok-2", phone=""))

    assert record.name == "Original"
    assert record.phone == "555-0100"
    assert record.token == "tok-2"


@pytest.mark.asyncio
async def test_corrupt_stored_record_is_treated_as_absent(services, store):
    store.records[keys.caregiver(CAREGIVER)] = "{not json"

    record = await services.session.login(login_payload(patient_email=None))

    assert record.name == "Casey"
    assert stored(store, keys.caregiver(CAREGIVER))["email"] == CAREGIVER


@pytest.mark.asyncio
async def test_set_active_patient_requires_session(services):
    assert await services.session.set_active_patient(PatientRef(email=PATIENT)) is False


@pytest.mark.asyncio
async def test_set_active_patient_requires_linked_patient(services, store):
    await services.session.login(login_payload(patient_email=None))

    assert await services.session.set_active_patient(PatientRef(email=PATIENT)) is False
    assert keys.active_patient(CAREGIVER) not in store.records


@pytest.mark.asyncio
async def test_reactivation_blocked_within_window(logged_in, clock, store):
    assert await logged_in.set_active_patient(None)
    clock.advance(milliseconds=2999)

    assert await logged_in.set_active_patient(PatientRef(email=PATIENT)) is False
    assert logged_in.active_patient is None
    assert keys.active_patient(CAREGIVER) not in store.records


@pytest.mark.asyncio
async def test_reactivation_allowed_after_window(logged_in, clock):
    assert await logged_in.clear_active_patient()
    clock.advance(milliseconds=3000)

    assert await logged_in.set_active_patient(PatientRef(email=PATIENT, name="Pat"))
    assert logged_in.active_patient.name == "Pat"


@pytest.mark.asyncio
async def test_block_flag_rejects_regardless_of_elapsed_time(logged_in, clock):
    clock.advance(hours=1)
    logged_in.block_auto_reactivation = True

    assert await logged_in.set_active_patient(PatientRef(email=PATIENT)) is False


@pytest.mark.asyncio
async def test_clearing_is_never_blocked(logged_in):
    logged_in.block_auto_reactivation = True

    assert await logged_in.set_active_patient(None)
    assert logged_in.active_patient is None


@pytest.mark.asyncio
async def test_refresh_status_adopts_stored_pointer(logged_in, store, events_seen):
    store.records.pop(keys.active_patient(CAREGIVER))

    assert await logged_in.refresh_status()
    assert logged_in.active_patient is None

    store.records[keys.active_patient(CAREGIVER)] = json.dumps({"email": PATIENT, "name": "Pat"})
    assert await logged_in.refresh_status()
    assert logged_in.active_patient.email == PATIENT

    kinds = [e.kind for e in events_seen]
    assert kinds[-2:] == [StatusEventKind.STATUS_REFRESHED, StatusEventKind.STATUS_REFRESHED]


@pytest.mark.asyncio
async def test_refresh_status_without_session_still_publishes(services, events_seen):
    assert await services.session.refresh_status() is False
    assert events_seen[-1].kind is StatusEventKind.STATUS_REFRESHED


@pytest.mark.asyncio
async def test_refresh_after_logout_does_not_revive_patient(logged_in, services, events_seen):
    await logged_in.logout()

    assert await logged_in.refresh_status() is False

    assert events_seen[-1].kind is StatusEventKind.STATUS_REFRESHED
    assert events_seen[-1].active_patient_email is None
    assert services.scheduler.rollover_running is False
    assert services.scheduler.patient_email is None
    assert services.geofence.active_actor is None


@pytest.mark.asyncio
async def test_deactivation_time_without_timezone_is_ignored(logged_in, store):
    store.records[keys.last_deactivation(CAREGIVER)] = json.dumps("2026-03-10T08:59:59")

    assert await logged_in.set_active_patient(PatientRef(email=PATIENT))
    assert logged_in.active_patient.email == PATIENT


@pytest.mark.asyncio
async def test_unreadable_pointer_on_login_does_not_inherit_previous_session(logged_in, store, authority):
    await logged_in.logout()
    other = "other@example.com"
    authority.exists["their-pat@example.com"] = True
    read = store.get_item

    async def failing_get_item(key):
        if key == keys.active_patient(other):
            raise RuntimeError("storage offline")
        return await read(key)

    store.get_item = failing_get_item
    record = await logged_in.login(login_payload(email=other, patient_email="their-pat@example.com"))

    assert record.email == other
    assert logged_in.active_patient is None


@pytest.mark.asyncio
async def test_logout_preserves_stored_pointer(logged_in, store, authority):
    await logged_in.logout()

    assert logged_in.caregiver is None
    assert keys.CURRENT_USER not in store.records
    assert stored(store, keys.active_patient(CAREGIVER))["email"] == PATIENT

    await logged_in.login(login_payload())
    assert logged_in.active_patient.email == PATIENT


class BlockingVerifier:
    """Verifier that answers only once released."""

    def __init__(self, result: VerificationResult):
        self.result = result
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    async def verify(self, patient_email, token=None):
        self.started.set()
        await self.release.wait()
        return self.result


@pytest.mark.asyncio
async def test_logout_during_verification_discards_result(services, store):
    verifier = BlockingVerifier(VerificationResult.NOT_EXISTS)
    services.session.verifier = verifier

    login = asyncio.create_task(services.session.login(login_payload()))
    await verifier.started.wait()
    await services.session.logout()

    assert await login is None
    assert services.session.caregiver is None
    assert keys.caregiver(CAREGIVER) not in store.records


@pytest.mark.asyncio
async def test_remove_active_patient_suppresses_reactivation(logged_in, clock, store):
    assert await logged_in.remove_patient(PATIENT)

    assert logged_in.active_patient is None
    assert logged_in.block_auto_reactivation is True
    assert logged_in.caregiver.patient_email is None
    assert stored(store, keys.patient_caregiver(PATIENT)) is None


@pytest.mark.asyncio
async def test_reactivation_block_lifts_after_delay(logged_in):
    logged_in.suppress_reactivation(0.01)
    assert logged_in.block_auto_reactivation is True

    await asyncio.sleep(0.05)

    assert logged_in.block_auto_reactivation is False


@pytest.mark.asyncio
async def test_update_caregiver_round_trips(services, store, clock):
    await services.session.login(login_payload(patient_email=None))
    first = services.session.caregiver.updated_at

    assert await services.session.update_caregiver({"name": "Casey Updated", "phone": "555-0199"})

    loaded = await services.session.get_caregiver(CAREGIVER)
    assert loaded.updated_at > first
    assert loaded.model_dump(exclude={"updated_at"}) == services.session.caregiver.model_dump(exclude={"updated_at"})
    assert loaded.name == "Casey Updated"


@pytest.mark.asyncio
async def test_update_caregiver_rejects_invalid_changes(services):
    await services.session.login(login_payload(patient_email=None))

    with pytest.raises(ValueError):
        await services.session.update_caregiver({"home_location": {"latitude": 200, "longitude": 0}})


@pytest.mark.asyncio
async def test_restore_recovers_profile_image_from_backup(services, store):
    await services.session.login(login_payload(patient_email=None, profile_image="file:///photos/cg.jpg"))
    assert stored(store, keys.profile_image_backup(CAREGIVER)) == "file:///photos/cg.jpg"

    record = stored(store, keys.caregiver(CAREGIVER))
    record["profile_image"] = None
    store.records[keys.caregiver(CAREGIVER)] = json.dumps(record)
    services.session.caregiver = None

    restored = await services.session.restore()

    assert restored.profile_image == "file:///photos/cg.jpg"
    assert stored(store, keys.caregiver(CAREGIVER))["profile_image"] == "file:///photos/cg.jpg"
