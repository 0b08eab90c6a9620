"""Time helpers for slots in the booking timezone"""

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from ..config import BOOKING_TIMEZONE, SLOT_DURATION_MINUTES

BOOKING_TZ = ZoneInfo(BOOKING_TIMEZONE)


def now_local() -> datetime:
    return datetime.now(BOOKING_TZ)


def today_local() -> date:
    return now_local().date()


def slot_start(day: date, time_slot: str) -> datetime:
    """Timezone-aware start of an "HH:MM" slot on a given day"""
    hour, minute = (int(part) for part in time_slot.split(":")[:2])
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=BOOKING_TZ)


def slot_end(day: date, time_slot: str, minutes: int = SLOT_DURATION_MINUTES) -> datetime:
    return slot_start(day, time_slot) + timedelta(minutes=minutes)


def parse_event_time(value: str) -> datetime:
    """ISO timestamp from a calendar API; naive values are read in the booking timezone"""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=BOOKING_TZ)
    return parsed
