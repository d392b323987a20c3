"""Caregiver session state: identity, active patient and the reactivation guard."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Dict, Optional, Set, TypeVar

from pydantic import ValidationError

from caresync.core.clock import Clock, local_now
from caresync.core.disconnector import DisconnectionCoordinator, RelationshipLedger
from caresync.core.events import StatusEventKind, StatusEvents
from caresync.core.models import (
    CaregiverRecord,
    PatientRef,
    VerificationResult,
    normalize_email
)
from caresync.core.verifier import RelationshipVerifier
from caresync.db import keys
from caresync.db.record_store import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def merge_login(stored: Optional[CaregiverRecord], incoming: CaregiverRecord) -> CaregiverRecord:
    """
    Combine a login payload with the stored record.

    Stored data wins for every field except the token (when the login carries
    one) and the server-declared patient e-mail, which always overwrites.
    """
    patient_email = normalize_email(incoming.patient_email) or None
    if stored is None:
        return incoming.model_copy(update={"patient_email": patient_email})

    return stored.model_copy(update={
        "email": incoming.email,
        "token": incoming.token or stored.token,
        "patient_email": patient_email
    })


class SessionManager:
    """Owns the logged-in caregiver and the active-patient pointer."""

    def __init__(
        self,
        store: RecordStore,
        verifier: RelationshipVerifier,
        coordinator: DisconnectionCoordinator,
        ledger: RelationshipLedger,
        events: Optional[StatusEvents] = None,
        clock: Clock = local_now,
        reactivation_block_ms: int = 3000,
        reactivation_lock_seconds: float = 5.0
    ):
        """
        Initialize session manager.

        Args:
            store: Record store
            verifier: Relationship verifier used on login
            coordinator: Disconnection coordinator fed by the verifier
            ledger: Local relationship ledger
            events: Status event channel (created when omitted)
            clock: Source of the current time
            reactivation_block_ms: Minimum delay between clearing and setting a patient
            reactivation_lock_seconds: Forced block duration after removing the active patient
        """
        self.store = store
        self.verifier = verifier
        self.coordinator = coordinator
        self.ledger = ledger
        self.events = events or StatusEvents()
        self.clock = clock
        self.reactivation_block = timedelta(milliseconds=reactivation_block_ms)
        self.reactivation_lock_seconds = reactivation_lock_seconds

        self.caregiver: Optional[CaregiverRecord] = None
        self.active_patient: Optional[PatientRef] = None
        self.block_auto_reactivation = False

        self._epoch = 0
        self._inflight: Set[asyncio.Task] = set()
        self._unblock_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ login

    async def login(self, payload: CaregiverRecord) -> Optional[CaregiverRecord]:
        """
        Start a caregiver session from a login payload.

        Merges with any stored record, verifies the linked patient and
        disconnects only on a confirmed negative.

        Args:
            payload: Record returned by the authentication service

        Returns:
            The session's caregiver record, or None if the session was ended
            while verification was in flight

        Raises:
            ValueError: If the payload has no e-mail
        """
        email = normalize_email(payload.email)
        if not email:
            raise ValueError("Caregiver email is required to log in")

        logger.info(f"Logging in caregiver {email}")
        stored = await self._load_caregiver(email)
        record = merge_login(stored, payload.model_copy(update={"email": email}))
        if stored:
            logger.info(f"Merged login payload with stored record for {email}")

        linked = record.patient_email
        if linked:
            result = await self._guarded(self.verifier.verify(linked, record.token))
            if result is None:
                logger.info(f"Login of {email} abandoned during verification")
                return None

            if result is VerificationResult.NOT_EXISTS:
                disconnected = await self._guarded(self.coordinator.disconnect(linked, email))
                if disconnected is None:
                    logger.info(f"Login of {email} abandoned during disconnection")
                    return None
                if disconnected:
                    logger.info(f"Patient {linked} confirmed gone, removing link from {email}")
                    record = record.model_copy(update={"patient_email": None})
                    await self._forget_patient_pointer(email, linked)
            elif result is VerificationResult.EXISTS:
                try:
                    await self.ledger.link(linked, email)
                except Exception as e:
                    logger.warning(f"Failed to record link {email} -> {linked}: {e}")

        record = self._touch(record)
        self.caregiver = record
        await self._save_caregiver(record)

        self.active_patient = await self._reconcile_pointer(record)
        await self._publish(StatusEventKind.SESSION_STARTED)
        logger.info(f"Caregiver {email} logged in (active patient: {self._active_email() or 'none'})")
        return record

    async def restore(self) -> Optional[CaregiverRecord]:
        """
        Resume the session of the last logged-in caregiver.

        Recovers a lost profile image reference from its backup pointer.
        """
        try:
            email = await self.store.get_json(keys.CURRENT_USER)
        except Exception as e:
            logger.warning(f"Could not read current user: {e}")
            return None

        if not isinstance(email, str) or not email:
            logger.info("No current user to restore")
            return None

        record = await self._load_caregiver(normalize_email(email))
        if record is None:
            logger.info(f"No caregiver data found for {email}")
            return None

        if not record.profile_image:
            record = await self._recover_profile_image(record)

        self.caregiver = record
        self.active_patient = await self._reconcile_pointer(record)
        await self._publish(StatusEventKind.SESSION_STARTED)
        return record

    async def logout(self) -> bool:
        """
        End the in-memory session.

        The stored record and active-patient pointer are kept for the next
        login. In-flight verification is cancelled and its result discarded.
        """
        self._epoch += 1
        for task in list(self._inflight):
            task.cancel()

        if self._unblock_task and not self._unblock_task.done():
            self._unblock_task.cancel()
            self.block_auto_reactivation = False
        self._unblock_task = None

        email = self.caregiver.email if self.caregiver else None
        self.caregiver = None
        try:
            await self.store.remove_item(keys.CURRENT_USER)
        except Exception as e:
            logger.warning(f"Could not clear current user: {e}")

        await self.events.publish(StatusEventKind.SESSION_ENDED, caregiver_email=email)
        logger.info(f"Caregiver {email or 'unknown'} logged out")
        return True

    # --------------------------------------------------------- active patient

    async def set_active_patient(self, patient: Optional[PatientRef]) -> bool:
        """
        Select (or clear, with None) the active patient.

        Setting a patient is rejected while ``block_auto_reactivation`` is
        set, within the reactivation window after a deactivation, or when
        the caregiver has no linked patient. Rejections change nothing.
        """
        if self.caregiver is None:
            logger.warning("Cannot set active patient: no caregiver logged in")
            return False

        if patient is None:
            return await self.clear_active_patient()

        if self.block_auto_reactivation:
            logger.info("Blocking reactivation of a patient: reactivation is suppressed")
            return False

        if not self.caregiver.patient_email:
            logger.info(f"Cannot activate a patient: {self.caregiver.email} has no linked patient")
            return False

        email = self.caregiver.email
        last = await self._last_deactivation(email)
        if last is not None and self.clock() - last < self.reactivation_block:
            logger.info("Blocked reactivation attempt (too soon after deactivation)")
            return False

        patient = patient.model_copy(update={"email": normalize_email(patient.email)})
        try:
            await self.store.set_json(keys.active_patient(email), patient.model_dump(mode="json"))
        except Exception as e:
            logger.warning(f"Failed to persist active patient for {email}: {e}")
            return False

        self.active_patient = patient
        await self._publish(StatusEventKind.ACTIVE_PATIENT_CHANGED)
        logger.info(f"Active patient for {email} is now {patient.email}")
        return True

    async def clear_active_patient(self) -> bool:
        """Clear the active patient and record the deactivation time."""
        if self.caregiver is None:
            logger.warning("Cannot clear active patient: no caregiver logged in")
            return False

        email = self.caregiver.email
        try:
            await self._drop_pointer(email)
        except Exception as e:
            logger.warning(f"Failed to clear active patient for {email}: {e}")
            return False

        self.active_patient = None
        await self._publish(StatusEventKind.ACTIVE_PATIENT_CHANGED)
        logger.info(f"Active patient cleared for {email}")
        return True

    async def refresh_status(self) -> bool:
        """
        Reconcile the in-memory pointer with the stored one.

        The stored pointer is the source of truth. A status event is published
        on every call, whether or not anything changed.
        """
        if self.caregiver is None:
            logger.info("No caregiver logged in, cannot refresh patient status")
            await self._publish(StatusEventKind.STATUS_REFRESHED)
            return False

        try:
            stored = await self._load_pointer(self.caregiver.email)
        except Exception as e:
            logger.warning(f"Error refreshing patient status: {e}")
            await self._publish(StatusEventKind.STATUS_REFRESHED)
            return False

        if self._active_email() != (stored.email if stored else None):
            logger.info("Stored active patient differs from session state, adopting stored value")
        self.active_patient = stored

        await self._publish(StatusEventKind.STATUS_REFRESHED)
        return True

    def suppress_reactivation(self, seconds: Optional[float] = None) -> None:
        """Force-block patient activation for ``seconds`` (default from settings)."""
        duration = self.reactivation_lock_seconds if seconds is None else seconds
        self.block_auto_reactivation = True
        if self._unblock_task and not self._unblock_task.done():
            self._unblock_task.cancel()
        self._unblock_task = asyncio.create_task(self._lift_block(duration))

    async def _lift_block(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        self.block_auto_reactivation = False
        logger.info("Auto-reactivation block removed")

    async def remove_patient(self, patient_email: str) -> bool:
        """
        Remove a patient from the caregiver's local relationships.

        When the patient was active the pointer is cleared and reactivation
        is suppressed for a short period.
        """
        if self.caregiver is None:
            logger.warning("Cannot remove patient: no caregiver logged in")
            return False

        patient = normalize_email(patient_email)
        email = self.caregiver.email
        try:
            await self.ledger.unlink(patient, email)
        except Exception as e:
            logger.warning(f"Failed to update relationship ledger for {patient}: {e}")

        if self.caregiver.patient_email == patient:
            record = self._touch(self.caregiver.model_copy(update={"patient_email": None}))
            if await self._save_caregiver(record):
                self.caregiver = record

        if self._active_email() == patient:
            logger.info("Removed patient was the active patient, clearing active patient")
            cleared = await self.clear_active_patient()
            self.suppress_reactivation()
            return cleared
        return True

    # ---------------------------------------------------------------- profile

    async def update_caregiver(self, changes: Dict[str, Any]) -> bool:
        """
        Apply profile changes to the logged-in caregiver.

        Raises:
            ValueError: If the changes do not form a valid record
        """
        if self.caregiver is None:
            logger.warning("Cannot update caregiver: no caregiver logged in")
            return False

        data = self.caregiver.model_dump()
        data.update({k: v for k, v in changes.items() if k not in {"email", "updated_at"}})
        record = self._touch(CaregiverRecord.model_validate(data))

        saved = await self._save_caregiver(record)
        if saved:
            self.caregiver = record
            logger.info(f"Caregiver data updated for {record.email}")
        return saved

    async def get_caregiver(self, email: str) -> Optional[CaregiverRecord]:
        """Read a stored caregiver record."""
        return await self._load_caregiver(normalize_email(email))

    # -------------------------------------------------------------- internals

    async def _guarded(self, awaitable: Awaitable[T]) -> Optional[T]:
        """
        Run a remote call that logout may cancel.

        Returns None when the session ended before the call completed.
        """
        epoch = self._epoch
        task = asyncio.ensure_future(awaitable)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            if epoch != self._epoch:
                return None
            task.cancel()
            raise
        if epoch != self._epoch:
            return None
        return result

    def _touch(self, record: CaregiverRecord) -> CaregiverRecord:
        now = self.clock()
        previous = record.updated_at
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return record.model_copy(update={"updated_at": now})

    def _active_email(self) -> Optional[str]:
        return self.active_patient.email if self.active_patient else None

    async def _publish(self, kind: StatusEventKind) -> None:
        # The in-memory pointer outlives logout; it only counts while a caregiver is logged in.
        if self.caregiver is None:
            await self.events.publish(kind)
            return
        await self.events.publish(
            kind,
            caregiver_email=self.caregiver.email,
            active_patient_email=self._active_email()
        )

    async def _load_caregiver(self, email: str) -> Optional[CaregiverRecord]:
        try:
            stored = await self.store.get_json(keys.caregiver(email))
        except Exception as e:
            logger.warning(f"Could not read caregiver record for {email}: {e}")
            return None
        if stored is None:
            return None
        try:
            return CaregiverRecord.model_validate(stored)
        except ValidationError as e:
            logger.warning(f"Discarding malformed caregiver record for {email}: {e}")
            return None

    async def _save_caregiver(self, record: CaregiverRecord) -> bool:
        try:
            await self.store.set_json(keys.caregiver(record.email), record.model_dump(mode="json"))
            await self.store.set_json(keys.CURRENT_USER, record.email)
        except Exception as e:
            logger.warning(f"Unable to save caregiver data for {record.email}: {e}")
            return False

        if record.profile_image:
            try:
                await self.store.set_json(keys.profile_image_backup(record.email), record.profile_image)
            except Exception as e:
                logger.warning(f"Failed to back up profile image path for {record.email}: {e}")
        return True

    async def _recover_profile_image(self, record: CaregiverRecord) -> CaregiverRecord:
        try:
            backup = await self.store.get_json(keys.profile_image_backup(record.email))
        except Exception as e:
            logger.warning(f"Could not read profile image backup for {record.email}: {e}")
            return record
        if not isinstance(backup, str) or not backup:
            return record

        logger.info(f"Recovered profile image path for {record.email} from backup")
        recovered = record.model_copy(update={"profile_image": backup})
        try:
            await self.store.set_json(keys.caregiver(record.email), recovered.model_dump(mode="json"))
        except Exception as e:
            logger.warning(f"Failed to restore profile image into main record: {e}")
        return recovered

    async def _load_pointer(self, caregiver_email: str) -> Optional[PatientRef]:
        stored = await self.store.get_json(keys.active_patient(caregiver_email))
        if stored is None:
            return None
        try:
            return PatientRef.model_validate(stored)
        except ValidationError as e:
            logger.warning(f"Discarding malformed active patient for {caregiver_email}: {e}")
            return None

    async def _reconcile_pointer(self, record: CaregiverRecord) -> Optional[PatientRef]:
        """Load the stored pointer, dropping it if the caregiver has no linked patient."""
        try:
            pointer = await self._load_pointer(record.email)
            if pointer is not None and not record.patient_email:
                logger.info(f"No linked patient for {record.email} - dropping stored active patient")
                await self.store.remove_item(keys.active_patient(record.email))
                return None
            return pointer
        except Exception as e:
            logger.warning(f"Error loading active patient for {record.email}: {e}")
            return None

    async def _forget_patient_pointer(self, caregiver_email: str, patient_email: str) -> None:
        """Clear the pointer (stored and in memory) if it references ``patient_email``."""
        try:
            stored = await self._load_pointer(caregiver_email)
            references = (stored and stored.email == patient_email) or self._active_email() == patient_email
            if references:
                await self._drop_pointer(caregiver_email)
                self.active_patient = None
                logger.info(f"Cleared active patient reference to {patient_email}")
        except Exception as e:
            logger.warning(f"Failed to clear active patient reference to {patient_email}: {e}")

    async def _drop_pointer(self, caregiver_email: str) -> None:
        await self.store.remove_item(keys.active_patient(caregiver_email))
        await self.store.set_json(keys.last_deactivation(caregiver_email), self.clock().isoformat())

    async def _last_deactivation(self, caregiver_email: str) -> Optional[datetime]:
        try:
            stored = await self.store.get_json(keys.last_deactivation(caregiver_email))
            last = datetime.fromisoformat(stored) if isinstance(stored, str) else None
        except Exception as e:
            logger.warning(f"Ignoring unreadable deactivation time for {caregiver_email}: {e}")
            return None
        if last is not None and last.tzinfo is None:
            logger.warning(f"Ignoring deactivation time without timezone for {caregiver_email}: {stored}")
            return None
        return last
