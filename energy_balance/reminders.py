"""
Meter Reading Reminders
Derives reminder dates from the last reading of each meter and keeps the schedule
"""
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

import pandas as pd

from .calculator import readings_to_frame
from .models import CamelModel, parse_models, parse_readings, to_utc
from .storage import REMINDERS_KEY, JsonFileStore

logger = logging.getLogger(__name__)


class ReminderFrequency(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


FREQUENCY_OFFSETS = {
    ReminderFrequency.MONTHLY: pd.DateOffset(months=1),
    ReminderFrequency.QUARTERLY: pd.DateOffset(months=3),
    ReminderFrequency.YEARLY: pd.DateOffset(years=1),
}


class NotificationSettings(CamelModel):
    push: bool = True
    email: bool = False
    sms: bool = False
    reminder_days: int = 3
    reminder_time: str = "09:00"


class MeterReadingReminder(CamelModel):
    id: str
    meter_name: str = ""
    meter_type: str = ""
    last_reading_date: datetime
    frequency: ReminderFrequency = ReminderFrequency.MONTHLY
    next_reminder_date: Optional[datetime] = None


def calculate_next_reminder_date(
    last_reading_date: datetime,
    frequency,
    reminder_days: int,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Date to remind the user of the next reading

    The next reading is due one frequency step after the last one; the
    reminder fires ``reminder_days`` earlier. A reminder that would already
    be in the past moves to the day before the due date, or to the due date
    itself when that day has passed too.

    Example:
        last reading 2024-01-10, monthly, 3 days -> 2024-02-07
    """
    now = to_utc(now or datetime.now(timezone.utc))
    last = pd.Timestamp(to_utc(last_reading_date))
    due = (last + FREQUENCY_OFFSETS[ReminderFrequency(frequency)]).to_pydatetime()

    reminder = due - timedelta(days=reminder_days)
    if reminder >= now:
        return reminder

    fallback = due - timedelta(days=1)
    if fallback >= now:
        return fallback
    return due


class ReminderScheduler:
    """Keeps the list of scheduled meter reading reminders in the local store"""

    def __init__(
        self,
        store: JsonFileStore,
        key: str = REMINDERS_KEY,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.key = key
        self.clock = clock

    def build_reminders(self, readings, frequency=ReminderFrequency.MONTHLY) -> List[MeterReadingReminder]:
        """One reminder per meter, anchored at its latest reading"""
        parsed = parse_readings(readings)
        frame = readings_to_frame(parsed)
        if frame.empty:
            return []

        names = {r.meter_id: r.meter_name for r in parsed}
        latest = frame.groupby("meter_id", sort=True).tail(1)
        return [
            MeterReadingReminder(
                id=row.meter_id,
                meter_name=names.get(row.meter_id) or row.meter_id,
                meter_type=row.type,
                last_reading_date=row.timestamp.to_pydatetime(),
                frequency=ReminderFrequency(frequency),
            )
            for row in latest.itertuples()
        ]

    def scheduled(self) -> List[MeterReadingReminder]:
        return parse_models(self.store.get(self.key, []), MeterReadingReminder)

    def _save(self, reminders: List[MeterReadingReminder]) -> None:
        self.store.set(self.key, [r.to_json_dict() for r in reminders])

    def schedule(self, reminder: MeterReadingReminder, settings: Optional[NotificationSettings] = None) -> MeterReadingReminder:
        """Compute the reminder date and store it, replacing an older entry for the same meter"""
        settings = settings or NotificationSettings()
        next_date = calculate_next_reminder_date(
            reminder.last_reading_date, reminder.frequency, settings.reminder_days, self.clock()
        )
        scheduled = reminder.model_copy(update={"next_reminder_date": next_date})

        reminders = [r for r in self.scheduled() if r.id != scheduled.id]
        reminders.append(scheduled)
        self._save(reminders)
        logger.info(f"Reminder for {scheduled.meter_name} scheduled at {next_date.isoformat()}")
        return scheduled

    def schedule_all(self, readings, settings: Optional[NotificationSettings] = None, frequency=ReminderFrequency.MONTHLY) -> List[MeterReadingReminder]:
        return [self.schedule(reminder, settings) for reminder in self.build_reminders(readings, frequency)]

    def due(self, now: Optional[datetime] = None) -> List[MeterReadingReminder]:
        now = to_utc(now or self.clock())
        return [r for r in self.scheduled() if r.next_reminder_date is not None and to_utc(r.next_reminder_date) <= now]

    def cancel(self, reminder_id: str) -> bool:
        reminders = self.scheduled()
        remaining = [r for r in reminders if r.id != reminder_id]
        if len(remaining) == len(reminders):
            return False
        self._save(remaining)
        return True
