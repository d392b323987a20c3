"""Status change notification for session observers."""

import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class StatusEventKind(str, Enum):
    """Why a status event was published."""

    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    ACTIVE_PATIENT_CHANGED = "active_patient_changed"
    STATUS_REFRESHED = "status_refreshed"


class StatusEvent(BaseModel):
    """One published status change."""

    sequence: int
    kind: StatusEventKind
    caregiver_email: Optional[str] = None
    active_patient_email: Optional[str] = None


Listener = Callable[[StatusEvent], Awaitable[None]]


class StatusEvents:
    """
    Ordered publish/subscribe channel.

    Every subscriber receives every event, in publish order, with a strictly
    increasing sequence number. A failing listener is logged and does not
    stop delivery to the others.
    """

    def __init__(self):
        self._listeners: List[Listener] = []
        self.sequence = 0

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register an async listener.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def publish(
        self,
        kind: StatusEventKind,
        caregiver_email: Optional[str] = None,
        active_patient_email: Optional[str] = None
    ) -> StatusEvent:
        self.sequence += 1
        event = StatusEvent(
            sequence=self.sequence,
            kind=kind,
            caregiver_email=caregiver_email,
            active_patient_email=active_patient_email
        )
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"Status listener failed on {kind.value} #{event.sequence}: {e}")
        return event
