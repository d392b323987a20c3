"""Removal of caregiver-patient relationships confirmed gone on the authority."""

import logging
from typing import List, Optional

import httpx

from caresync.core.authority import AuthorityClient
from caresync.core.models import VerificationResult, normalize_email
from caresync.core.verifier import RelationshipVerifier
from caresync.db import keys
from caresync.db.record_store import RecordStore

logger = logging.getLogger(__name__)


class RelationshipLedger:
    """Local record of both sides of each caregiver-patient link."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def patients_of(self, caregiver_email: str) -> List[str]:
        stored = await self.store.get_json(keys.connected_patients(normalize_email(caregiver_email)))
        if not isinstance(stored, list):
            return []
        return [normalize_email(p) for p in stored if isinstance(p, str) and p.strip()]

    async def caregiver_for(self, patient_email: str) -> Optional[str]:
        stored = await self.store.get_json(keys.patient_caregiver(normalize_email(patient_email)))
        return normalize_email(stored) if isinstance(stored, str) and stored.strip() else None

    async def link(self, patient_email: str, caregiver_email: str) -> None:
        patient = normalize_email(patient_email)
        caregiver = normalize_email(caregiver_email)

        patients = await self.patients_of(caregiver)
        if patient not in patients:
            patients.append(patient)
            await self.store.set_json(keys.connected_patients(caregiver), patients)
        await self.store.set_json(keys.patient_caregiver(patient), caregiver)

    async def unlink(self, patient_email: str, caregiver_email: str) -> None:
        patient = normalize_email(patient_email)
        caregiver = normalize_email(caregiver_email)

        patients = await self.patients_of(caregiver)
        if patient in patients:
            patients.remove(patient)
            await self.store.set_json(keys.connected_patients(caregiver), patients)

        # Only drop the patient side if it still points at this caregiver
        if await self.caregiver_for(patient) == caregiver:
            await self.store.remove_item(keys.patient_caregiver(patient))


class DisconnectionCoordinator:
    """Acts on a confirmed-negative verification, never on an uncertain one."""

    def __init__(
        self,
        verifier: RelationshipVerifier,
        authority: AuthorityClient,
        ledger: RelationshipLedger
    ):
        self.verifier = verifier
        self.authority = authority
        self.ledger = ledger

    async def disconnect(self, patient_email: str, caregiver_email: str) -> bool:
        """
        Disconnect a caregiver from a patient the authority no longer knows.

        Re-verifies first; only NOT_EXISTS allows the disconnect. Notifying the
        authority is best-effort: its failure does not block local cleanup.

        Args:
            patient_email: Patient to disconnect
            caregiver_email: Caregiver losing the link

        Returns:
            True if the caller should proceed with local cleanup
        """
        patient = normalize_email(patient_email)
        caregiver = normalize_email(caregiver_email)
        logger.info(f"Disconnecting {caregiver} from patient {patient}")

        result = await self.verifier.verify(patient)
        if result is not VerificationResult.NOT_EXISTS:
            logger.info(f"Not disconnecting from {patient}: verification returned {result.value}")
            return False

        if self.authority.available:
            try:
                notified = await self.authority.disconnect_patient(patient, caregiver)
                if notified:
                    logger.info(f"Authority acknowledged removal of {caregiver} -> {patient}")
                else:
                    logger.warning("Authority rejected disconnect notification - continuing locally")
            except httpx.HTTPError as e:
                logger.warning(f"Disconnect notification failed - continuing locally: {e}")

        try:
            await self.ledger.unlink(patient, caregiver)
        except Exception as e:
            logger.warning(f"Failed to update relationship ledger for {patient}: {e}")

        return True
