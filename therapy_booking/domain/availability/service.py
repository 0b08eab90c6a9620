"""Availability service - Open slots, slot consumption and external calendar merge"""

import logging
from datetime import date, timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...auth import AuthContext
from ...models import Psychologist
from ...services.google_calendar_service import list_busy_events
from ...shared.scheduling import now_local, parse_event_time, slot_end, slot_start, today_local
from ...shared.validators import normalize_time_slot, parse_date
from .repository import AvailabilityRepository

logger = logging.getLogger(__name__)

# Calendar events the platform itself created for earlier bookings
SYSTEM_EVENT_KEYWORDS = ("littleminds", "little care", "kuttikal")
# Calendar entries that mark a day without blocking bookable hours
HOLIDAY_KEYWORDS = ("holiday", "festival", "celebration", "observance")


def is_system_event(summary: str) -> bool:
    title = (summary or "").lower()
    return any(keyword in title for keyword in SYSTEM_EVENT_KEYWORDS)


def is_holiday_event(summary: str) -> bool:
    title = (summary or "").lower()
    return any(keyword in title for keyword in HOLIDAY_KEYWORDS)


def filter_slots_against_events(day: date, slots: list[str], events: list[dict]) -> list[str]:
    """
    Drop slots overlapping a blocking calendar event.
    Overlap is slot_start < event_end and slot_end > event_start.
    """
    blocking = []
    for event in events:
        summary = event.get("summary", "")
        if is_system_event(summary) or is_holiday_event(summary):
            continue
        try:
            blocking.append((parse_event_time(event["start"]), parse_event_time(event["end"])))
        except (KeyError, ValueError):
            logger.warning(f"⚠️ Skipping calendar event with unreadable times: {summary}")

    open_slots = []
    for time_slot in slots:
        start, end = slot_start(day, time_slot), slot_end(day, time_slot)
        if any(start < event_end and end > event_start for event_start, event_end in blocking):
            continue
        open_slots.append(time_slot)
    return open_slots


def sort_slots(slots) -> list[str]:
    return sorted(set(slots), key=lambda s: tuple(int(part) for part in s.split(":")))


class AvailabilityService:
    """Service layer for availability business logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = AvailabilityRepository()

    def get_psychologist(self, psychologist_id: int) -> Psychologist:
        psychologist = self.repo.get_psychologist(self.db, psychologist_id)
        if not psychologist:
            raise HTTPException(status_code=404, detail="Psychologist not found")
        return psychologist

    # ------------------------------------------------------------------
    # Slot primitives
    # ------------------------------------------------------------------

    def is_slot_available(
        self, psychologist_id: int, day: date, time_slot: str, ignore_order_id: Optional[str] = None
    ) -> bool:
        """
        True when the slot is still listed as open, no active session occupies it and
        no other order holds a live lock on it. The session check guards against the
        list and the session table drifting apart under concurrent writes.
        """
        availability = self.repo.get_availability(self.db, psychologist_id, day)
        if not availability or time_slot not in (availability.time_slots or []):
            return False
        if self.repo.get_active_session(self.db, psychologist_id, day, time_slot):
            return False
        return time_slot not in self.repo.locked_times(
            self.db, psychologist_id, day, exclude_order_id=ignore_order_id
        )

    def consume_slot(self, psychologist_id: int, day: date, time_slot: str) -> None:
        """Remove a slot from the open list; removing an absent slot is a no-op"""
        availability = self.repo.lock_availability(self.db, psychologist_id, day)
        if not availability or time_slot not in (availability.time_slots or []):
            return
        remaining = [s for s in availability.time_slots if s != time_slot]
        self.repo.save_slots(self.db, psychologist_id, day, remaining)
        logger.info(f"🔒 Slot consumed: psychologist={psychologist_id} {day} {time_slot}")

    def release_slot(self, psychologist_id: int, day: date, time_slot: str) -> None:
        """Return a slot to the open list without duplicating it"""
        availability = self.repo.lock_availability(self.db, psychologist_id, day)
        current = list(availability.time_slots or []) if availability else []
        if time_slot in current:
            return
        self.repo.save_slots(self.db, psychologist_id, day, sort_slots(current + [time_slot]))
        logger.info(f"🔓 Slot released: psychologist={psychologist_id} {day} {time_slot}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_open_slots(self, psychologist_id: int, day_value: str) -> dict:
        """
        Open slots for a date: listed slots minus booked sessions, other clients' live
        locks, past times and blocking events on the psychologist's external calendar.
        """
        try:
            day = parse_date(day_value)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        psychologist = self.get_psychologist(psychologist_id)
        availability = self.repo.get_availability(self.db, psychologist_id, day)
        if not availability or not availability.is_available or day < today_local():
            return {"psychologistId": psychologist_id, "date": day.isoformat(), "slots": [], "calendarFiltered": False}

        taken = self.repo.booked_times(self.db, psychologist_id, day) | self.repo.locked_times(
            self.db, psychologist_id, day
        )
        now = now_local()
        slots = [
            s for s in sort_slots(availability.time_slots or []) if s not in taken and slot_start(day, s) > now
        ]

        calendar_filtered = False
        if psychologist.google_calendar_credentials and slots:
            events = await list_busy_events(psychologist, self.db, day)
            if events is None:
                logger.warning(
                    f"⚠️ Calendar unavailable for psychologist {psychologist_id}; returning unfiltered slots"
                )
            else:
                slots = filter_slots_against_events(day, slots, events)
                calendar_filtered = True

        return {
            "psychologistId": psychologist_id,
            "date": day.isoformat(),
            "slots": slots,
            "calendarFiltered": calendar_filtered,
        }

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_availability(self, context: AuthContext, psychologist_id: Optional[int], day_value: str, slots: list[str]) -> dict:
        """Replace a date's open slots; slots already held by active sessions stay out"""
        target_id = psychologist_id if context.is_admin and psychologist_id else context.psychologist_id
        if target_id is None:
            raise HTTPException(status_code=400, detail="psychologistId is required")
        if not context.is_admin and psychologist_id and psychologist_id != context.psychologist_id:
            raise HTTPException(status_code=403, detail="Cannot edit another psychologist's availability")

        try:
            day = parse_date(day_value)
            normalized = sort_slots(normalize_time_slot(s) for s in slots)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        if day < today_local():
            raise HTTPException(status_code=400, detail="Cannot set availability for a past date")

        self.get_psychologist(target_id)
        booked = self.repo.booked_times(self.db, target_id, day)
        conflicts = [s for s in normalized if s in booked]
        open_slots = [s for s in normalized if s not in booked]

        self.repo.save_slots(self.db, target_id, day, open_slots)
        self.db.commit()
        logger.info(f"✅ Availability set: psychologist={target_id} {day} slots={open_slots}")
        return {
            "psychologistId": target_id,
            "date": day.isoformat(),
            "slots": open_slots,
            "skippedBooked": conflicts,
        }

    async def sync_external_calendar(self, psychologist: Psychologist, days_ahead: int = 14) -> int:
        """
        Remove listed slots that collide with blocking events on the external calendar.
        Returns the number of slots removed; a calendar read failure skips that date.
        """
        removed = 0
        start = today_local()
        for availability in self.repo.list_upcoming(self.db, psychologist.id, start, start + timedelta(days=days_ahead)):
            slots = list(availability.time_slots or [])
            if not slots:
                continue
            events = await list_busy_events(psychologist, self.db, availability.date)
            if events is None:
                logger.warning(f"⚠️ Calendar sync skipped {availability.date} for psychologist {psychologist.id}")
                continue
            blocked = set(slots) - set(filter_slots_against_events(availability.date, slots, events))
            if not blocked:
                continue
            # Bookings may have changed the list while the calendar was read
            current = self.repo.lock_availability(self.db, psychologist.id, availability.date)
            kept = [s for s in (current.time_slots or []) if s not in blocked]
            removed += len(current.time_slots or []) - len(kept)
            self.repo.save_slots(self.db, psychologist.id, availability.date, kept)
        self.db.commit()
        if removed:
            logger.info(f"📅 Calendar sync removed {removed} slot(s) for psychologist {psychologist.id}")
        return removed
