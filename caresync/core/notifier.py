"""Alert delivery: webhook sender and the in-app notification inbox."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from caresync.core.clock import Clock, local_now
from caresync.core.models import AlertPayload, CaregiverNotification, normalize_email
from caresync.db import keys
from caresync.db.record_store import RecordStore

logger = logging.getLogger(__name__)

MAX_NOTIFICATIONS = 50


class AlertSender(ABC):
    """External notification collaborator: accepts a payload, reports success."""

    @abstractmethod
    async def send(self, payload: AlertPayload) -> bool:
        """Deliver ``payload``; never raises on delivery failure."""


class NullAlertSender(AlertSender):
    """Sender used when no delivery channel is configured."""

    async def send(self, payload: AlertPayload) -> bool:
        logger.info(f"No alert channel configured, not sending '{payload.subject}'")
        return False


class WebhookAlertSender(AlertSender):
    """POSTs alert payloads as JSON to a webhook."""

    def __init__(
        self,
        url: str,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def send(self, payload: AlertPayload) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=payload.model_dump(by_alias=True))
        except httpx.HTTPError as e:
            logger.warning(f"Alert webhook failed for {payload.to}: {e}")
            return False

        if not 200 <= response.status_code < 300:
            logger.warning(f"Alert webhook answered {response.status_code} for {payload.to}")
            return False

        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("success") is False:
            logger.warning(f"Alert webhook reported failure for {payload.to}: {body.get('error')}")
            return False

        logger.info(f"Alert delivered to {payload.to}")
        return True


class NotificationInbox:
    """Per-caregiver list of in-app notifications, newest first."""

    def __init__(self, store: RecordStore, clock: Clock = local_now, limit: int = MAX_NOTIFICATIONS):
        self.store = store
        self.clock = clock
        self.limit = limit

    async def list(self, caregiver_email: str) -> List[CaregiverNotification]:
        stored = await self.store.get_json(keys.caregiver_notifications(normalize_email(caregiver_email)))
        if not isinstance(stored, list):
            return []

        notifications = []
        for item in stored:
            try:
                notifications.append(CaregiverNotification.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed notification for {caregiver_email}: {e}")
        return notifications

    async def add(
        self,
        caregiver_email: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Prepend a notification, keeping at most ``limit`` entries.

        Returns:
            True if the notification was stored
        """
        email = normalize_email(caregiver_email)
        if not email:
            logger.error("Caregiver information missing for notification")
            return False

        try:
            notifications = await self.list(email)
            notifications.insert(0, CaregiverNotification(
                title=title,
                message=message,
                data=data or {},
                timestamp=self.clock()
            ))
            await self.store.set_json(
                keys.caregiver_notifications(email),
                [n.model_dump(mode="json") for n in notifications[:self.limit]]
            )
        except Exception as e:
            logger.error(f"Error adding caregiver notification for {email}: {e}")
            return False

        logger.info(f"Stored in-app notification for {email}")
        return True
