"""Home geofence: distance, safety classification and suppressed alerts."""

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from pydantic import ValidationError

from caresync.core.clock import Clock, local_now
from caresync.core.disconnector import RelationshipLedger
from caresync.core.events import StatusEvent, StatusEventKind
from caresync.core.models import (
    AlertDecision,
    AlertPayload,
    GeofenceReading,
    LocationSample,
    SafetyStatus,
    normalize_email
)
from caresync.core.notifier import AlertSender, NotificationInbox
from caresync.db import keys
from caresync.db.record_store import RecordStore

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0
AT_HOME_RADIUS_M = 50.0
DEFAULT_SAFE_RADIUS_M = 500.0


def haversine_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance(a: LocationSample, b: LocationSample) -> float:
    return haversine_distance_m(a.latitude, a.longitude, b.latitude, b.longitude)


def classify(distance_m: float, safe_radius: float = DEFAULT_SAFE_RADIUS_M) -> SafetyStatus:
    if distance_m < AT_HOME_RADIUS_M:
        return SafetyStatus.AT_HOME
    if distance_m <= safe_radius:
        return SafetyStatus.WITHIN_SAFE_AREA
    return SafetyStatus.OUTSIDE_SAFE_AREA


class LocationCache:
    """Recent current-location samples with a time-to-live."""

    def __init__(self, clock: Clock = local_now, ttl_seconds: float = 300.0):
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds)
        self._entries: Dict[str, Tuple[LocationSample, datetime]] = {}

    def get(self, actor_email: str) -> Optional[LocationSample]:
        entry = self._entries.get(actor_email)
        if entry is None:
            return None
        sample, cached_at = entry
        if self.clock() - cached_at > self.ttl:
            del self._entries[actor_email]
            return None
        return sample

    def put(self, actor_email: str, sample: LocationSample) -> None:
        self._entries[actor_email] = (sample, self.clock())

    def invalidate(self, actor_email: Optional[str] = None) -> None:
        if actor_email is None:
            self._entries.clear()
        else:
            self._entries.pop(actor_email, None)


class GeofenceEngine:
    """
    Tracks actor positions against their home anchor.

    Alerts fire when an actor is outside the safe radius, at most once per
    suppression window per actor, regardless of which device saw the crossing.
    """

    def __init__(
        self,
        store: RecordStore,
        sender: AlertSender,
        inbox: NotificationInbox,
        ledger: RelationshipLedger,
        cache: Optional[LocationCache] = None,
        clock: Clock = local_now,
        safe_radius: float = DEFAULT_SAFE_RADIUS_M,
        suppression_minutes: int = 60
    ):
        """
        Initialize geofence engine.

        Args:
            store: Record store for anchors, samples and suppression records
            sender: Alert delivery channel
            inbox: In-app notification fallback
            ledger: Relationship ledger used to find an actor's caregiver
            cache: Current-location cache
            clock: Source of the current time
            safe_radius: Radius in meters considered safe
            suppression_minutes: Minimum interval between alerts for one actor
        """
        self.store = store
        self.sender = sender
        self.inbox = inbox
        self.ledger = ledger
        self.cache = cache or LocationCache(clock)
        self.clock = clock
        self.safe_radius = safe_radius
        self.suppression = timedelta(minutes=suppression_minutes)

        self.active_actor: Optional[str] = None
        self.caregiver_email: Optional[str] = None

    async def on_status_event(self, event: StatusEvent) -> None:
        """Follow the session's active patient."""
        if event.kind is StatusEventKind.SESSION_ENDED:
            self.active_actor = None
            self.caregiver_email = None
            self.cache.invalidate()
            return
        self.caregiver_email = event.caregiver_email
        if event.active_patient_email != self.active_actor:
            logger.info(f"Geofence now tracking {event.active_patient_email or 'nobody'}")
        self.active_actor = event.active_patient_email

    # -------------------------------------------------------------- locations

    async def _read_sample(self, key: str) -> Optional[LocationSample]:
        try:
            stored = await self.store.get_json(key)
        except Exception as e:
            logger.warning(f"Could not read {key}: {e}")
            return None
        if stored is None:
            return None
        try:
            return LocationSample.model_validate(stored)
        except ValidationError as e:
            logger.warning(f"Discarding malformed location under {key}: {e}")
            return None

    async def home_anchor(self, actor_email: str) -> Optional[LocationSample]:
        return await self._read_sample(keys.home_location(normalize_email(actor_email)))

    async def set_home_anchor(
        self,
        actor_email: str,
        latitude: float,
        longitude: float,
        address: Optional[str] = None,
        set_by_caregiver: Optional[bool] = None
    ) -> Optional[LocationSample]:
        """
        Write an actor's home anchor.

        ``set_by_caregiver`` left as None keeps the flag of the existing anchor.

        Returns:
            The stored anchor, or None if it could not be saved
        """
        actor = normalize_email(actor_email)
        if set_by_caregiver is None:
            existing = await self.home_anchor(actor)
            set_by_caregiver = existing.set_by_caregiver if existing else False

        anchor = LocationSample(
            latitude=latitude,
            longitude=longitude,
            timestamp=self.clock(),
            address=address,
            set_by_caregiver=set_by_caregiver
        )
        try:
            await self.store.set_json(keys.home_location(actor), anchor.model_dump(mode="json"))
        except Exception as e:
            logger.error(f"Failed to save home location for {actor}: {e}")
            return None

        logger.info(f"Home location for {actor} set (by caregiver: {set_by_caregiver})")
        return anchor

    async def record_location(self, actor_email: str, latitude: float, longitude: float) -> LocationSample:
        """Store a new current position for an actor and cache it."""
        actor = normalize_email(actor_email)
        sample = LocationSample(latitude=latitude, longitude=longitude, timestamp=self.clock())
        self.cache.put(actor, sample)
        try:
            await self.store.set_json(keys.current_location(actor), sample.model_dump(mode="json"))
        except Exception as e:
            logger.warning(f"Failed to persist current location for {actor}: {e}")
        return sample

    async def current_location(self, actor_email: str) -> Optional[LocationSample]:
        actor = normalize_email(actor_email)
        cached = self.cache.get(actor)
        if cached is not None:
            return cached

        sample = await self._read_sample(keys.current_location(actor))
        if sample is not None:
            self.cache.put(actor, sample)
        return sample

    # ------------------------------------------------------------- evaluation

    async def evaluate(self, actor_email: Optional[str] = None) -> Optional[GeofenceReading]:
        """
        Compare an actor's current position with their home anchor.

        Defaults to the session's active patient. Returns None when either
        position is unknown.
        """
        actor = normalize_email(actor_email or self.active_actor)
        if not actor:
            return None

        home = await self.home_anchor(actor)
        current = await self.current_location(actor)
        if home is None or current is None:
            logger.info(f"Cannot evaluate {actor}: home or current location unknown")
            return None

        meters = distance(current, home)
        return GeofenceReading(
            actor_email=actor,
            distance_meters=meters,
            status=classify(meters, self.safe_radius),
            current=current,
            home=home
        )

    async def check(
        self,
        actor_email: Optional[str] = None,
        force: bool = False
    ) -> Tuple[Optional[GeofenceReading], Optional[AlertDecision]]:
        """
        Evaluate an actor and alert if they are outside the safe area.

        Returns:
            The reading and the alert decision, both None when a position is unknown
        """
        reading = await self.evaluate(actor_email)
        if reading is None:
            return None, None
        if reading.status is not SafetyStatus.OUTSIDE_SAFE_AREA:
            return reading, AlertDecision()
        decision = await self.maybe_alert(reading.actor_email, reading.distance_meters, force=force)
        return reading, decision

    # ----------------------------------------------------------------- alerts

    async def _last_alert(self, actor: str, now: datetime) -> Optional[datetime]:
        latest = None
        for day in (now.date(), now.date() - timedelta(days=1)):
            try:
                stored = await self.store.get_json(keys.location_alert(actor, day))
                sent_at = datetime.fromisoformat(stored) if isinstance(stored, str) else None
            except Exception as e:
                logger.warning(f"Ignoring unreadable alert record for {actor}: {e}")
                continue
            if sent_at is not None and sent_at.tzinfo is None:
                logger.warning(f"Ignoring alert record without timezone for {actor}: {stored}")
                continue
            if sent_at is not None and (latest is None or sent_at > latest):
                latest = sent_at
        return latest

    async def _resolve_recipient(self, actor: str) -> Optional[str]:
        try:
            caregiver = await self.ledger.caregiver_for(actor)
        except Exception as e:
            logger.warning(f"Could not look up caregiver for {actor}: {e}")
            caregiver = None
        if caregiver:
            return caregiver
        if actor == self.active_actor:
            return self.caregiver_email
        return None

    async def _display_name(self, key: str, fallback: str) -> str:
        try:
            stored = await self.store.get_json(key)
        except Exception:
            return fallback
        name = stored.get("name") if isinstance(stored, dict) else None
        return name or fallback

    def _build_payload(
        self,
        recipient: str,
        patient_name: str,
        caregiver_name: str,
        distance_m: int,
        now: datetime
    ) -> AlertPayload:
        subject = f"{patient_name} is {distance_m}m away from home"
        body = (
            f"Hello {caregiver_name},\n\n"
            f"{patient_name} is currently {distance_m} meters away from home. Please contact user.\n\n"
            f"Location detected at: {now.strftime('%Y-%m-%d %H:%M:%S')}\n\n"
            f"This is an automated alert from CareSync."
        )
        return AlertPayload(
            to=recipient,
            subject=subject,
            body=body,
            distance_meters=distance_m,
            timestamp=now.isoformat()
        )

    async def maybe_alert(
        self,
        actor_email: str,
        distance_m: float,
        recipient: Optional[str] = None,
        force: bool = False,
        patient_name: Optional[str] = None
    ) -> AlertDecision:
        """
        Alert an actor's caregiver about a geofence crossing.

        Nothing is sent inside the safe radius, or within the suppression
        window of the previous alert unless ``force`` is set. If the sender
        fails the in-app inbox is used instead; either success refreshes the
        suppression record.

        Args:
            actor_email: Tracked actor
            distance_m: Distance from home in meters
            recipient: Caregiver to notify (looked up when omitted)
            force: Bypass the suppression window
            patient_name: Name used in the message (defaults to the e-mail)

        Returns:
            What happened: suppressed, delivered, and the payload if one was built
        """
        actor = normalize_email(actor_email)
        if distance_m <= self.safe_radius:
            return AlertDecision()

        now = self.clock()
        if not force:
            last = await self._last_alert(actor, now)
            if last is not None and now - last < self.suppression:
                minutes = round((now - last).total_seconds() / 60)
                logger.info(f"Skipping location alert for {actor}: last alert was sent {minutes} minutes ago")
                return AlertDecision(suppressed=True)
        else:
            logger.info(f"Force sending alert for {actor}, bypassing suppression")

        to = normalize_email(recipient) or await self._resolve_recipient(actor)
        if not to:
            logger.warning(f"No caregiver to alert for {actor}")
            return AlertDecision()

        patient_name = patient_name or actor
        caregiver_name = await self._display_name(keys.caregiver(to), "Caregiver")
        rounded = int(round(distance_m))
        payload = self._build_payload(to, patient_name, caregiver_name, rounded, now)

        delivered = await self.sender.send(payload)
        if not delivered:
            logger.info(f"Alert delivery failed for {to}, falling back to in-app notification")
            delivered = await self.inbox.add(
                to,
                payload.subject,
                f"Hello {caregiver_name}, {patient_name} is {rounded}m away from home. Please contact user.",
                {
                    "type": "location_alert",
                    "patientEmail": actor,
                    "distance": rounded,
                    "timestamp": payload.timestamp
                }
            )

        if delivered:
            try:
                await self.store.set_json(keys.location_alert(actor, now.date()), now.isoformat())
            except Exception as e:
                logger.warning(f"Failed to store alert time for {actor}: {e}")
        else:
            logger.warning(f"Location alert for {actor} could not be delivered")

        return AlertDecision(delivered=delivered, payload=payload)
