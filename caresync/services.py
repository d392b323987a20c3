"""Construction and lifecycle of the CareSync components."""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import httpx

from caresync.core.authority import AuthorityClient
from caresync.core.clock import Clock, local_now
from caresync.core.disconnector import DisconnectionCoordinator, RelationshipLedger
from caresync.core.events import StatusEvents
from caresync.core.geofence import GeofenceEngine, LocationCache
from caresync.core.notifier import AlertSender, NotificationInbox, NullAlertSender, WebhookAlertSender
from caresync.core.recurrence import RecurrenceScheduler
from caresync.core.session_manager import SessionManager
from caresync.core.verifier import RelationshipVerifier
from caresync.db.pool import DatabasePool
from caresync.db.record_store import InMemoryRecordStore, PostgresRecordStore, RecordStore
from caresync.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class CareServices:
    """Everything a request handler needs, wired to one event channel."""

    store: RecordStore
    events: StatusEvents
    ledger: RelationshipLedger
    session: SessionManager
    geofence: GeofenceEngine
    scheduler: RecurrenceScheduler
    inbox: NotificationInbox
    pool: Optional[DatabasePool] = None
    _unsubscribe: List[Callable[[], None]] = field(default_factory=list)

    async def start(self) -> None:
        """Prepare storage and resume the last session."""
        if isinstance(self.store, PostgresRecordStore):
            await self.store.ensure_schema()
        restored = await self.session.restore()
        if restored:
            logger.info(f"Restored session for {restored.email}")

    async def close(self) -> None:
        self.scheduler.stop_rollover()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        if self.pool:
            await self.pool.close()


def build_services(
    settings: Settings,
    store: Optional[RecordStore] = None,
    clock: Clock = local_now,
    authority_transport: Optional[httpx.AsyncBaseTransport] = None,
    alert_sender: Optional[AlertSender] = None
) -> CareServices:
    """
    Wire the components from settings.

    Args:
        settings: Application settings
        store: Record store override (PostgreSQL or in-memory chosen otherwise)
        clock: Source of the current time
        authority_transport: Optional httpx transport for the authority client
        alert_sender: Alert sender override

    Returns:
        Wired services with geofence and scheduler subscribed to status events
    """
    pool = None
    if store is None:
        if settings.database_url:
            pool = DatabasePool(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size
            )
            store = PostgresRecordStore(pool)
        else:
            logger.info("No DATABASE_URL configured, keeping records in memory")
            store = InMemoryRecordStore()

    authority = AuthorityClient(
        settings.authority_base_url,
        timeout=settings.remote_timeout_seconds,
        transport=authority_transport
    )
    verifier = RelationshipVerifier(authority)
    ledger = RelationshipLedger(store)
    coordinator = DisconnectionCoordinator(verifier, authority, ledger)
    events = StatusEvents()

    session = SessionManager(
        store,
        verifier,
        coordinator,
        ledger,
        events=events,
        clock=clock,
        reactivation_block_ms=settings.reactivation_block_ms,
        reactivation_lock_seconds=settings.reactivation_lock_seconds
    )

    if alert_sender is None:
        if settings.alert_webhook_url:
            alert_sender = WebhookAlertSender(settings.alert_webhook_url, timeout=settings.alert_timeout_seconds)
        else:
            alert_sender = NullAlertSender()

    inbox = NotificationInbox(store, clock=clock)
    geofence = GeofenceEngine(
        store,
        alert_sender,
        inbox,
        ledger,
        cache=LocationCache(clock, ttl_seconds=settings.location_cache_ttl_seconds),
        clock=clock,
        safe_radius=settings.safe_radius_meters,
        suppression_minutes=settings.alert_suppression_minutes
    )
    scheduler = RecurrenceScheduler(store, clock=clock)

    services = CareServices(
        store=store,
        events=events,
        ledger=ledger,
        session=session,
        geofence=geofence,
        scheduler=scheduler,
        inbox=inbox,
        pool=pool
    )
    services._unsubscribe.append(events.subscribe(geofence.on_status_event))
    services._unsubscribe.append(events.subscribe(scheduler.on_status_event))
    return services
