"""HTTP client for the remote relationship authority."""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class AuthorityClient:
    """Thin wrapper over the authority's caregiver endpoints."""

    def __init__(
        self,
        base_url: Optional[str],
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the authority client.

        Args:
            base_url: Authority base URL; None means no network capability
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self.transport = transport

    @property
    def available(self) -> bool:
        return self.base_url is not None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport
        )

    async def check_patient(self, patient_email: str, token: Optional[str] = None) -> httpx.Response:
        """
        Ask whether a patient account still exists.

        Raises:
            httpx.HTTPError: On transport failure or timeout
        """
        headers = {"Authorization": f"Bearer {token}"} if token else None
        async with self._client() as client:
            return await client.get(
                f"/api/caregivers/check-patient/{patient_email}",
                headers=headers
            )

    async def disconnect_patient(self, patient_email: str, caregiver_email: str) -> bool:
        """
        Tell the authority a caregiver-patient link was removed.

        Returns:
            True on a 2xx answer
        """
        async with self._client() as client:
            response = await client.post(
                "/api/caregivers/disconnect-patient",
                json={"patientEmail": patient_email, "caregiverEmail": caregiver_email}
            )
        return 200 <= response.status_code < 300
