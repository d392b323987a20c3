"""Pytest configuration and fixtures."""

import json
import pytest
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional

import httpx
from httpx import ASGITransport, AsyncClient

from caresync.api.routes import get_services
from caresync.core.authority import AuthorityClient
from caresync.core.notifier import AlertSender
from caresync.core.models import AlertPayload
from caresync.db.record_store import InMemoryRecordStore
from caresync.main import app
from caresync.services import CareServices, build_services
from caresync.settings import Settings

AUTHORITY_URL = "http://authority.test"


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAuthority:
    """
    In-process relationship authority served through httpx.MockTransport.

    ``exists`` maps patient e-mails to the ``exists`` flag returned; e-mails
    in ``statuses`` get that HTTP status instead, and e-mails in ``failures``
    raise the given exception.
    """

    def __init__(self):
        self.exists: Dict[str, Optional[bool]] = {}
        self.statuses: Dict[str, int] = {}
        self.failures: Dict[str, Exception] = {}
        self.checks: List[httpx.Request] = []
        self.disconnects: List[dict] = []
        self.disconnect_status = 200

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path == "/api/caregivers/disconnect-patient":
            self.disconnects.append(json.loads(request.content))
            return httpx.Response(self.disconnect_status, json={"success": True})

        prefix = "/api/caregivers/check-patient/"
        if request.method == "GET" and request.url.path.startswith(prefix):
            self.checks.append(request)
            email = request.url.path[len(prefix):]
            if email in self.failures:
                raise self.failures[email]
            if email in self.statuses:
                return httpx.Response(self.statuses[email], text="error")
            if email not in self.exists:
                return httpx.Response(404, json={"message": "Patient not found"})
            return httpx.Response(200, json={"exists": self.exists[email]})

        return httpx.Response(405)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> AuthorityClient:
        return AuthorityClient(AUTHORITY_URL, timeout=5.0, transport=self.transport)


class RecordingSender(AlertSender):
    """Alert sender that remembers payloads and answers ``result``."""

    def __init__(self, result: bool = True):
        self.result = result
        self.payloads: List[AlertPayload] = []

    async def send(self, payload: AlertPayload) -> bool:
        self.payloads.append(payload)
        return self.result


@pytest.fixture
def clock() -> FixedClock:
    """Clock fixed at 09:00 UTC on a Tuesday."""
    return FixedClock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def authority() -> FakeAuthority:
    return FakeAuthority()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url=None,
        authority_base_url=AUTHORITY_URL,
        alert_webhook_url=None,
        safe_radius_meters=500.0,
        reactivation_block_ms=3000,
        reactivation_lock_seconds=5.0,
        alert_suppression_minutes=60,
        location_cache_ttl_seconds=300.0
    )


@pytest.fixture
async def services(
    test_settings: Settings,
    store: InMemoryRecordStore,
    clock: FixedClock,
    authority: FakeAuthority,
    sender: RecordingSender
) -> AsyncGenerator[CareServices, None]:
    """Provide fully wired services over an in-memory store."""
    wired = build_services(
        test_settings,
        store=store,
        clock=clock,
        authority_transport=authority.transport,
        alert_sender=sender
    )

    yield wired

    await wired.session.logout()
    await wired.close()


@pytest.fixture
async def test_client(services: CareServices) -> AsyncGenerator[AsyncClient, None]:
    """Provide test HTTP client bound to the wired services."""
    app.dependency_overrides[get_services] = lambda: services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
