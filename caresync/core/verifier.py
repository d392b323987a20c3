"""Tri-state verification of caregiver-patient relationships."""

import logging
from typing import Optional

import httpx

from caresync.core.authority import AuthorityClient
from caresync.core.models import VerificationResult, normalize_email

logger = logging.getLogger(__name__)


class RelationshipVerifier:
    """
    Asks the authority whether a linked patient still exists.

    Ambiguity always maps to UNKNOWN: a false disconnection is worse than a
    stale connection.
    """

    def __init__(self, authority: AuthorityClient):
        self.authority = authority

    async def verify(self, patient_email: Optional[str], token: Optional[str] = None) -> VerificationResult:
        """
        Verify that ``patient_email`` is still a known patient.

        Args:
            patient_email: Linked patient e-mail
            token: Optional caregiver bearer token

        Returns:
            EXISTS on ``{"exists": true}``, NOT_EXISTS on ``{"exists": false}``
            or HTTP 404, UNKNOWN otherwise
        """
        email = normalize_email(patient_email)
        if not email:
            logger.warning("No patient email provided for verification")
            return VerificationResult.UNKNOWN

        if not self.authority.available:
            logger.info(f"No authority configured, cannot verify {email}")
            return VerificationResult.UNKNOWN

        try:
            response = await self.authority.check_patient(email, token)
        except httpx.TimeoutException:
            logger.warning(f"Verification of {email} timed out - keeping connection")
            return VerificationResult.UNKNOWN
        except httpx.HTTPError as e:
            logger.warning(f"Network error verifying {email} - keeping connection: {e}")
            return VerificationResult.UNKNOWN

        if response.status_code == 404:
            logger.info(f"Patient {email} not found (404)")
            return VerificationResult.NOT_EXISTS

        if not response.is_success:
            logger.warning(f"Authority answered {response.status_code} for {email} - keeping connection")
            return VerificationResult.UNKNOWN

        try:
            payload = response.json()
        except ValueError:
            logger.warning(f"Non-JSON verification response for {email} - keeping connection")
            return VerificationResult.UNKNOWN

        exists = payload.get("exists") if isinstance(payload, dict) else None
        if exists is True:
            logger.info(f"Verified patient {email} exists")
            return VerificationResult.EXISTS
        if exists is False:
            logger.info(f"Patient {email} no longer exists on the authority")
            return VerificationResult.NOT_EXISTS

        logger.warning(f"Ambiguous verification response for {email} - keeping connection")
        return VerificationResult.UNKNOWN
