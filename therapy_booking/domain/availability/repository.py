"""Availability repository - Database operations for open slots"""

from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from ...models import (
    ACTIVE_LOCK_STATUSES,
    ACTIVE_SESSION_STATUSES,
    LOCK_PAYMENT_SUCCESS,
    Availability,
    Psychologist,
    SlotLock,
    TherapySession,
    utcnow,
)


class AvailabilityRepository:
    """Repository for availability database operations.

    Mutating methods flush but never commit: slot changes must land in the same
    transaction as the session or payment change that caused them.
    """

    @staticmethod
    def get_psychologist(db: Session, psychologist_id: int) -> Optional[Psychologist]:
        return (
            db.query(Psychologist)
            .filter(Psychologist.id == psychologist_id, Psychologist.is_active.is_(True))
            .first()
        )

    @staticmethod
    def get_availability(db: Session, psychologist_id: int, day: date) -> Optional[Availability]:
        return (
            db.query(Availability)
            .filter(Availability.psychologist_id == psychologist_id, Availability.date == day)
            .first()
        )

    @staticmethod
    def lock_availability(db: Session, psychologist_id: int, day: date) -> Optional[Availability]:
        """Row-locked, freshly read availability for a read-modify-write of its slot list"""
        return (
            db.query(Availability)
            .filter(Availability.psychologist_id == psychologist_id, Availability.date == day)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def list_upcoming(db: Session, psychologist_id: int, start: date, end: date) -> list[Availability]:
        return (
            db.query(Availability)
            .filter(
                Availability.psychologist_id == psychologist_id,
                Availability.date >= start,
                Availability.date <= end,
            )
            .order_by(Availability.date)
            .all()
        )

    @staticmethod
    def save_slots(db: Session, psychologist_id: int, day: date, slots: list[str]) -> Availability:
        """Replace a date's slot list (creating the row if needed)"""
        availability = AvailabilityRepository.get_availability(db, psychologist_id, day)
        if availability is None:
            availability = Availability(psychologist_id=psychologist_id, date=day, time_slots=[])
            db.add(availability)
        # JSON columns are not mutation-tracked; always assign a new list
        availability.time_slots = list(slots)
        availability.is_available = bool(slots)
        db.flush()
        return availability

    @staticmethod
    def get_active_session(
        db: Session, psychologist_id: int, day: date, time_slot: str
    ) -> Optional[TherapySession]:
        return (
            db.query(TherapySession)
            .filter(
                TherapySession.psychologist_id == psychologist_id,
                TherapySession.scheduled_date == day,
                TherapySession.scheduled_time == time_slot,
                TherapySession.status.in_(ACTIVE_SESSION_STATUSES),
            )
            .first()
        )

    @staticmethod
    def booked_times(db: Session, psychologist_id: int, day: date) -> set[str]:
        rows = (
            db.query(TherapySession.scheduled_time)
            .filter(
                TherapySession.psychologist_id == psychologist_id,
                TherapySession.scheduled_date == day,
                TherapySession.status.in_(ACTIVE_SESSION_STATUSES),
            )
            .all()
        )
        return {row[0] for row in rows}

    @staticmethod
    def locked_times(
        db: Session, psychologist_id: int, day: date, exclude_order_id: Optional[str] = None
    ) -> set[str]:
        """Times under a live slot lock, optionally ignoring one order's own lock"""
        query = db.query(SlotLock.scheduled_time, SlotLock.status, SlotLock.expires_at, SlotLock.order_id).filter(
            SlotLock.psychologist_id == psychologist_id,
            SlotLock.scheduled_date == day,
            SlotLock.status.in_(ACTIVE_LOCK_STATUSES),
        )
        now = utcnow()
        times = set()
        for time_slot, status, expires_at, order_id in query.all():
            if exclude_order_id and order_id == exclude_order_id:
                continue
            # Captured payments keep the slot even after the hold window
            if status == LOCK_PAYMENT_SUCCESS or expires_at > now:
                times.add(time_slot)
        return times

    @staticmethod
    def psychologists_with_calendar(db: Session) -> list[Psychologist]:
        return (
            db.query(Psychologist)
            .filter(
                Psychologist.google_calendar_credentials.isnot(None),
                Psychologist.is_active.is_(True),
            )
            .all()
        )
