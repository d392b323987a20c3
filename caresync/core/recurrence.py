"""Reminder storage and daily recurrence expansion with midnight rollover."""

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from caresync.core.clock import Clock, local_now, seconds_until_next_midnight
from caresync.core.events import StatusEvent, StatusEventKind
from caresync.core.models import Recurrence, Reminder, new_reminder_id, normalize_email
from caresync.db import keys
from caresync.db.record_store import RecordStore

logger = logging.getLogger(__name__)

WEEKDAYS = {"monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"}

SeriesKey = Tuple[str, str, str]


def normalize_hhmm(value: Optional[str]) -> str:
    """
    Normalize a time value into HH:MM.

    Raises:
        ValueError: If a non-empty value is not a valid time of day
    """
    if not value:
        return ""
    match = re.match(r"^(\d{1,2}):(\d{2})$", value.strip())
    if not match:
        raise ValueError(f"Invalid reminder time: {value!r} (expected HH:MM)")
    hour = int(match.group(1))
    minute = int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid reminder time: {value!r} (expected HH:MM)")
    return f"{hour:02d}:{minute:02d}"


def normalize_recurrence(value: Optional[str], fallback: Recurrence = Recurrence.NONE) -> Recurrence:
    if not value:
        return fallback
    try:
        return Recurrence(value.strip().lower())
    except ValueError:
        return fallback


def normalize_day_of_week(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = value.strip().lower()
    return cleaned if cleaned in WEEKDAYS else None


def series_key(reminder: Reminder) -> SeriesKey:
    return (reminder.title, reminder.time, reminder.series_id)


class DailyRolloverTask:
    """Runs a callback at every local midnight until stopped."""

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        clock: Clock = local_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.callback = callback
        self.clock = clock
        self.sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            delay = seconds_until_next_midnight(self.clock())
            logger.info(f"Next reminder rollover in {delay / 3600:.2f} hours")
            await self.sleep(delay)
            try:
                await self.callback()
            except Exception as e:
                logger.error(f"Midnight reminder rollover failed: {e}")


class RecurrenceScheduler:
    """
    Reminders of the active patient.

    A daily series is every reminder sharing title, time and series id. Each
    series keeps at most one instance for today and one incomplete instance
    in the future.
    """

    def __init__(
        self,
        store: RecordStore,
        clock: Clock = local_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.store = store
        self.clock = clock
        self.patient_email: Optional[str] = None
        self.caregiver_email: Optional[str] = None
        self.reminders: List[Reminder] = []
        self._lock = asyncio.Lock()
        self._rollover = DailyRolloverTask(self.roll_over, clock=clock, sleep=sleep)

    @property
    def rollover_running(self) -> bool:
        return self._rollover.running

    async def on_status_event(self, event: StatusEvent) -> None:
        """Reload reminders when the active patient changes."""
        if event.kind is StatusEventKind.SESSION_ENDED:
            self._rollover.stop()
            self.patient_email = None
            self.caregiver_email = None
            self.reminders = []
            return

        self.caregiver_email = event.caregiver_email
        patient = event.active_patient_email
        if patient == self.patient_email:
            return

        if patient:
            await self.load(patient)
            self._rollover.start()
        else:
            self._rollover.stop()
            self.patient_email = None
            self.reminders = []

    # ------------------------------------------------------------ persistence

    async def load(self, patient_email: str) -> List[Reminder]:
        """Load a patient's reminders, filling in missing daily instances."""
        patient = normalize_email(patient_email)
        async with self._lock:
            self.patient_email = patient
            self.reminders = await self._read(patient)
            spawned = self.spawn_next()
            created = self.ensure_today()
            if spawned or created:
                await self._write()
            logger.info(f"Loaded {len(self.reminders)} reminders for {patient}")
            return list(self.reminders)

    async def _read(self, patient: str) -> List[Reminder]:
        try:
            stored = await self.store.get_json(keys.reminders(patient))
        except Exception as e:
            logger.warning(f"Could not read reminders for {patient}: {e}")
            return []
        if not isinstance(stored, list):
            return []

        reminders = []
        for item in stored:
            try:
                reminders.append(Reminder.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed reminder for {patient}: {e}")
        return reminders

    async def _write(self) -> bool:
        if not self.patient_email:
            return False
        try:
            await self.store.set_json(
                keys.reminders(self.patient_email),
                [r.model_dump(mode="json") for r in self.reminders]
            )
        except Exception as e:
            logger.warning(f"Failed to save reminders for {self.patient_email}: {e}")
            return False
        return True

    # ------------------------------------------------------------- expansion

    def _today(self) -> str:
        return self.clock().date().isoformat()

    def _tomorrow(self) -> str:
        return (self.clock().date() + timedelta(days=1)).isoformat()

    def _daily_series(self) -> Dict[SeriesKey, List[Reminder]]:
        series: Dict[SeriesKey, List[Reminder]] = {}
        for reminder in self.reminders:
            if reminder.recurrence is Recurrence.DAILY:
                series.setdefault(series_key(reminder), []).append(reminder)
        return series

    def _clone(self, source: Reminder, day: str) -> Reminder:
        return source.model_copy(update={
            "id": new_reminder_id(),
            "date": day,
            "completed": False,
            "completed_at": None,
            "completed_by": None,
            "is_persistent": source.is_persistent,
            "parent_reminder_id": source.series_id,
            "last_updated": self.clock()
        })

    @staticmethod
    def _has_open_future(members: List[Reminder], today: str) -> bool:
        return any(r.date is not None and r.date > today and not r.completed for r in members)

    def ensure_today(self) -> int:
        """
        Give every daily series an instance dated today.

        Returns:
            Number of instances created
        """
        today = self._today()
        created = 0
        for members in self._daily_series().values():
            if any(r.date == today for r in members):
                continue
            template = next((r for r in members if r.parent_reminder_id is None), members[-1])
            self.reminders.append(self._clone(template, today))
            created += 1
            logger.info(f"Created today's instance for daily reminder: {template.title}")
        return created

    def spawn_next(self) -> int:
        """Create a tomorrow instance for each completed daily series lacking one."""
        today = self._today()
        tomorrow = self._tomorrow()
        created = 0
        for members in self._daily_series().values():
            completed = [r for r in members if r.completed]
            if not completed or self._has_open_future(members, today):
                continue
            self.reminders.append(self._clone(completed[-1], tomorrow))
            created += 1
            logger.info(f"Created next day instance for daily reminder: {completed[-1].title}")
        return created

    async def roll_over(self) -> None:
        """Midnight hook: fill in today's instances and persist."""
        async with self._lock:
            if self.ensure_today():
                await self._write()

    def start_rollover(self) -> None:
        self._rollover.start()

    def stop_rollover(self) -> None:
        self._rollover.stop()

    # ------------------------------------------------------------- operations

    def get(self, reminder_id: str) -> Optional[Reminder]:
        return next((r for r in self.reminders if r.id == reminder_id), None)

    def _replace(self, updated: Reminder) -> None:
        self.reminders = [updated if r.id == updated.id else r for r in self.reminders]

    def _time_in_ms(self, day: str, hhmm: str) -> Optional[int]:
        if not day or not hhmm:
            return None
        hour, minute = hhmm.split(":")
        moment = datetime.fromisoformat(day).replace(
            hour=int(hour), minute=int(minute), tzinfo=self.clock().tzinfo
        )
        return int(moment.timestamp() * 1000)

    async def add_reminder(self, data: Dict[str, Any]) -> Reminder:
        """
        Add a reminder for the active patient.

        Raises:
            ValueError: If no patient is active, the title is empty or the
                time is malformed
        """
        if not self.patient_email:
            raise ValueError("No active patient selected")
        title = (data.get("title") or "").strip()
        if not title:
            raise ValueError("Reminder title is required")

        now = self.clock()
        hhmm = normalize_hhmm(data.get("time"))
        day = data.get("date") or self._today()
        try:
            day = datetime.fromisoformat(str(day)).date().isoformat()
        except ValueError as e:
            raise ValueError(f"Invalid reminder date: {day!r}") from e

        days = [d for d in (normalize_day_of_week(v) for v in data.get("recurrence_days") or []) if d]
        caregiver = normalize_email(data.get("caregiver_email") or self.caregiver_email) or None
        persistent = data.get("is_persistent")

        reminder = Reminder(
            title=title,
            time=hhmm,
            recurrence=normalize_recurrence(data.get("recurrence")),
            recurrence_days=days,
            date=day,
            is_persistent=True if persistent is None else bool(persistent),
            for_patient=self.patient_email,
            added_by_caregiver=caregiver is not None,
            caregiver_email=caregiver,
            time_in_ms=self._time_in_ms(day, hhmm),
            date_added=now,
            last_updated=now
        )

        async with self._lock:
            self.reminders.append(reminder)
            await self._write()
        logger.info(f"Added reminder '{title}' for {self.patient_email}")
        return reminder

    async def update_reminder(self, reminder_id: str, changes: Dict[str, Any]) -> Optional[Reminder]:
        """Apply field changes to a reminder; returns None if it does not exist."""
        async with self._lock:
            current = self.get(reminder_id)
            if current is None:
                return None

            data = current.model_dump()
            data.update({k: v for k, v in changes.items() if k not in {"id", "for_patient", "date_added"}})
            if "time" in changes:
                data["time"] = normalize_hhmm(changes["time"])
            if "recurrence" in changes:
                data["recurrence"] = normalize_recurrence(changes["recurrence"], current.recurrence)
            data["time_in_ms"] = self._time_in_ms(data.get("date") or "", data["time"])
            data["last_updated"] = self.clock()

            updated = Reminder.model_validate(data)
            self._replace(updated)
            await self._write()
            return updated

    async def delete_reminder(self, reminder_id: str) -> bool:
        async with self._lock:
            before = len(self.reminders)
            self.reminders = [r for r in self.reminders if r.id != reminder_id]
            if len(self.reminders) == before:
                return False
            await self._write()
            logger.info(f"Deleted reminder {reminder_id}")
            return True

    async def complete(self, reminder_id: str, completed_by: str = "caregiver") -> Optional[Reminder]:
        """
        Mark a reminder completed.

        For a daily series without an incomplete future instance, exactly one
        instance dated tomorrow is created.
        """
        async with self._lock:
            current = self.get(reminder_id)
            if current is None:
                return None

            now = self.clock()
            done = current.model_copy(update={
                "completed": True,
                "completed_at": now,
                "completed_by": completed_by,
                "last_updated": now
            })
            self._replace(done)

            if done.recurrence is Recurrence.DAILY:
                members = self._daily_series().get(series_key(done), [])
                if not self._has_open_future(members, self._today()):
                    self.reminders.append(self._clone(done, self._tomorrow()))
                    logger.info(f"Created next day instance for daily reminder: {done.title}")

            await self._write()
            return done
