"""Session service - Reschedule, cancellation and credit/package bookings"""

import logging
from datetime import date, timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...auth import AuthContext
from ...config import RESCHEDULE_APPROVAL_AFTER_COUNT, RESCHEDULE_CUTOFF_HOURS, RESCHEDULE_MIN_LEAD_HOURS
from ...models import (
    CANCELLED_SESSION_STATUS,
    CREDIT_AVAILABLE,
    CREDIT_CONSUMED,
    ClientPackage,
    TherapySession,
)
from ...services import outbox
from ...shared.scheduling import now_local, slot_start
from ...shared.validators import parse_date
from ..availability.service import AvailabilityService
from ..booking.repository import BookingRepository
from ..booking.service import BookingService
from ..booking.slot_lock_service import SLOT_UNAVAILABLE_DETAIL
from .repository import SessionRepository

logger = logging.getLogger(__name__)

RESCHEDULABLE_STATUSES = ("booked", "rescheduled", "confirmed")
RESCHEDULE_REQUESTED_STATUS = "reschedule_requested"


class SessionService:
    """Service layer for session business logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = SessionRepository()
        self.booking_repo = BookingRepository()
        self.availability = AvailabilityService(db)

    def get_session(self, context: AuthContext, session_id: int) -> TherapySession:
        session = self.repo.get_by_id(self.db, session_id)
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        if context.is_admin:
            return session
        if context.client_id is not None and session.client_id == context.client_id:
            return session
        if context.psychologist_id is not None and session.psychologist_id == context.psychologist_id:
            return session
        raise HTTPException(status_code=404, detail="Session not found")

    def list_sessions(self, context: AuthContext) -> list[TherapySession]:
        if context.client_id is not None:
            return self.repo.list_for_client(self.db, context.client_id)
        if context.psychologist_id is not None:
            return self.repo.list_for_psychologist(self.db, context.psychologist_id)
        raise HTTPException(status_code=403, detail="No client or psychologist profile")

    def _require_future_slot(self, day: date, time_slot: str, lead_hours: int = 0) -> None:
        if slot_start(day, time_slot) <= now_local() + timedelta(hours=lead_hours):
            if lead_hours:
                raise HTTPException(
                    status_code=400, detail=f"New slot must be at least {lead_hours} hour(s) from now"
                )
            raise HTTPException(status_code=400, detail="Cannot book a slot in the past")

    # ========================================================================
    # Reschedule
    # ========================================================================

    def reschedule(
        self, context: AuthContext, session_id: int, day_value: str, time_slot: str
    ) -> tuple[TherapySession, list[int]]:
        """
        Move a session. Inside the cutoff window (or past the configured reschedule
        count) the move is stored as a request for an admin to approve.
        """
        session = self.get_session(context, session_id)
        if session.status not in RESCHEDULABLE_STATUSES:
            raise HTTPException(status_code=400, detail=f"Cannot reschedule a session with status '{session.status}'")

        new_day = parse_date(day_value)
        if new_day == session.scheduled_date and time_slot == session.scheduled_time:
            raise HTTPException(status_code=400, detail="Session is already scheduled at this time")

        current_start = slot_start(session.scheduled_date, session.scheduled_time)
        now = now_local()
        if current_start <= now:
            raise HTTPException(status_code=400, detail="Session has already started")
        self._require_future_slot(new_day, time_slot)

        within_cutoff = current_start - now <= timedelta(hours=RESCHEDULE_CUTOFF_HOURS)
        over_limit = (
            RESCHEDULE_APPROVAL_AFTER_COUNT > 0 and (session.reschedule_count or 0) >= RESCHEDULE_APPROVAL_AFTER_COUNT
        )
        if within_cutoff or over_limit:
            return self._request_reschedule(session, new_day, time_slot)
        # Lead time only binds moves that skip admin review
        self._require_future_slot(new_day, time_slot, RESCHEDULE_MIN_LEAD_HOURS)
        return self.apply_reschedule(session, new_day, time_slot)

    def _request_reschedule(
        self, session: TherapySession, new_day: date, time_slot: str
    ) -> tuple[TherapySession, list[int]]:
        session.status = RESCHEDULE_REQUESTED_STATUS
        session.requested_date = new_day
        session.requested_time = time_slot
        event = outbox.record_event(self.db, outbox.RESCHEDULE_REQUESTED, {"session_id": session.id})
        self.db.commit()
        self.db.refresh(session)
        logger.info(f"📝 Reschedule request for session {session.id}: {new_day} {time_slot}")
        return session, [event.id]

    def apply_reschedule(
        self, session: TherapySession, new_day: date, time_slot: str
    ) -> tuple[TherapySession, list[int]]:
        """Release the old slot, take the new one and replace the calendar invite"""
        if not self.availability.is_slot_available(session.psychologist_id, new_day, time_slot):
            raise HTTPException(status_code=409, detail=SLOT_UNAVAILABLE_DETAIL)

        old_day, old_time = session.scheduled_date, session.scheduled_time
        previous_event_id = session.google_calendar_event_id
        try:
            session.scheduled_date = new_day
            session.scheduled_time = time_slot
            session.status = "rescheduled"
            session.reschedule_count = (session.reschedule_count or 0) + 1
            session.requested_date = None
            session.requested_time = None
            session.google_calendar_event_id = None
            session.google_meet_link = None
            session.google_calendar_link = None
            self.availability.release_slot(session.psychologist_id, old_day, old_time)
            self.availability.consume_slot(session.psychologist_id, new_day, time_slot)
            event = outbox.record_event(
                self.db,
                outbox.SESSION_RESCHEDULED,
                {
                    "session_id": session.id,
                    "previous_event_id": previous_event_id,
                    "previous_date": old_day.isoformat(),
                    "previous_time": old_time,
                },
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Slot {new_day} {time_slot} taken while rescheduling session {session.id}")
            raise HTTPException(status_code=409, detail=SLOT_UNAVAILABLE_DETAIL) from e

        self.db.refresh(session)
        logger.info(f"📅 Session {session.id} moved {old_day} {old_time} -> {new_day} {time_slot}")
        return session, [event.id]

    # ========================================================================
    # Cancellation
    # ========================================================================

    def cancel(self, context: AuthContext, session_id: int) -> tuple[TherapySession, list[int]]:
        session = self.get_session(context, session_id)
        if session.status != "booked":
            raise HTTPException(status_code=400, detail="Only booked sessions can be cancelled")
        if slot_start(session.scheduled_date, session.scheduled_time) <= now_local():
            raise HTTPException(status_code=400, detail="Past sessions cannot be cancelled")

        session.status = CANCELLED_SESSION_STATUS
        self.availability.release_slot(session.psychologist_id, session.scheduled_date, session.scheduled_time)
        event = outbox.record_event(self.db, outbox.SESSION_CANCELLED, {"session_id": session.id})
        self.db.commit()
        self.db.refresh(session)
        logger.info(f"🚫 Session {session.id} cancelled")
        return session, [event.id]

    # ========================================================================
    # Credit and package bookings
    # ========================================================================

    def book_with_credit(
        self, context: AuthContext, transaction_id: str, psychologist_id: int, day_value: str, time_slot: str
    ) -> tuple[TherapySession, list[int]]:
        """Apply a captured payment that lost its slot to a new slot"""
        payment = self.booking_repo.get_payment_by_transaction_id(self.db, transaction_id)
        if not payment or payment.client_id != context.client_id:
            raise HTTPException(
                status_code=404,
                detail={"code": "PAYMENT_NOT_FOUND", "message": "Credit not found"},
            )
        if payment.credit_status == CREDIT_CONSUMED:
            raise HTTPException(
                status_code=400,
                detail={"code": "CREDIT_ALREADY_USED", "message": "This credit has already been used"},
            )
        if payment.credit_status != CREDIT_AVAILABLE:
            raise HTTPException(status_code=400, detail="This payment is not available as credit")
        if payment.psychologist_id != psychologist_id:
            raise HTTPException(
                status_code=400,
                detail={
                    "code": "CREDIT_PSYCHOLOGIST_MISMATCH",
                    "message": "This credit can only be used with the psychologist it was paid for",
                },
            )

        day = parse_date(day_value)
        self._require_future_slot(day, time_slot)
        if not self.availability.is_slot_available(psychologist_id, day, time_slot):
            raise HTTPException(status_code=409, detail=SLOT_UNAVAILABLE_DETAIL)

        package = self.booking_repo.get_package(self.db, payment.package_id)
        try:
            session = TherapySession(
                psychologist_id=psychologist_id,
                client_id=payment.client_id,
                package_id=payment.package_id,
                scheduled_date=day,
                scheduled_time=time_slot,
                status="booked",
                session_type="Package Session" if package else "Individual Session",
                price=payment.amount,
            )
            self.db.add(session)
            self.db.flush()
            if not self.repo.consume_credit(self.db, payment.id, session.id):
                self.db.rollback()
                raise HTTPException(
                    status_code=400,
                    detail={"code": "CREDIT_ALREADY_USED", "message": "This credit has already been used"},
                )
            self.availability.consume_slot(psychologist_id, day, time_slot)
            if package:
                client_package = BookingService(self.db).ensure_client_package(session, package)
                session.client_package_id = client_package.id
            event = outbox.record_event(
                self.db, outbox.BOOKING_CONFIRMED, {"session_id": session.id, "payment_id": payment.id}
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Slot {day} {time_slot} taken while applying credit {transaction_id}")
            raise HTTPException(status_code=409, detail=SLOT_UNAVAILABLE_DETAIL) from e

        self.db.refresh(session)
        logger.info(f"💳 Credit {transaction_id} applied to session {session.id}")
        return session, [event.id]

    def book_remaining(
        self, context: AuthContext, client_package_id: int, day_value: str, time_slot: str
    ) -> tuple[TherapySession, list[int]]:
        """Book one of the prepaid sessions left in a package"""
        client_package = self.repo.get_client_package(self.db, client_package_id)
        if not client_package or client_package.client_id != context.client_id:
            raise HTTPException(status_code=404, detail="Package not found")
        if client_package.status != "active" or client_package.remaining_sessions <= 0:
            raise HTTPException(status_code=400, detail="No sessions remaining in this package")

        psychologist_id = client_package.psychologist_id
        day = parse_date(day_value)
        self._require_future_slot(day, time_slot)
        if not self.availability.is_slot_available(psychologist_id, day, time_slot):
            raise HTTPException(status_code=409, detail=SLOT_UNAVAILABLE_DETAIL)

        try:
            session = TherapySession(
                psychologist_id=psychologist_id,
                client_id=client_package.client_id,
                package_id=client_package.package_id,
                client_package_id=client_package.id,
                scheduled_date=day,
                scheduled_time=time_slot,
                status="booked",
                session_type="Package Session",
                price=0,
            )
            self.db.add(session)
            self.db.flush()
            if not self.repo.decrement_remaining(self.db, client_package.id):
                self.db.rollback()
                raise HTTPException(status_code=400, detail="No sessions remaining in this package")
            self.availability.consume_slot(psychologist_id, day, time_slot)
            self.db.refresh(client_package)
            if client_package.remaining_sessions == 0:
                client_package.status = "completed"
            event = outbox.record_event(self.db, outbox.BOOKING_CONFIRMED, {"session_id": session.id})
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Slot {day} {time_slot} taken while booking package {client_package_id}")
            raise HTTPException(status_code=409, detail=SLOT_UNAVAILABLE_DETAIL) from e

        self.db.refresh(session)
        logger.info(
            f"📦 Package {client_package.id} session booked; {client_package.remaining_sessions} remaining"
        )
        return session, [event.id]

    def list_client_packages(self, context: AuthContext) -> list[ClientPackage]:
        if context.client_id is None:
            raise HTTPException(status_code=403, detail="Client profile required")
        return self.repo.list_client_packages(self.db, context.client_id)

    # ========================================================================
    # Admin review of reschedule requests
    # ========================================================================

    def list_reschedule_requests(self) -> list[TherapySession]:
        return self.repo.list_by_status(self.db, RESCHEDULE_REQUESTED_STATUS)

    def _get_request(self, session_id: int) -> TherapySession:
        session = self.repo.get_by_id(self.db, session_id)
        if not session or session.status != RESCHEDULE_REQUESTED_STATUS:
            raise HTTPException(status_code=404, detail="Reschedule request not found")
        return session

    def approve_reschedule_request(self, session_id: int) -> tuple[TherapySession, list[int]]:
        session = self._get_request(session_id)
        if not session.requested_date or not session.requested_time:
            raise HTTPException(status_code=400, detail="Request has no target slot")
        self._require_future_slot(session.requested_date, session.requested_time)
        logger.info(f"✅ Approving reschedule request for session {session.id}")
        return self.apply_reschedule(session, session.requested_date, session.requested_time)

    def reject_reschedule_request(self, session_id: int, reason: Optional[str] = None) -> TherapySession:
        session = self._get_request(session_id)
        session.status = "rescheduled" if (session.reschedule_count or 0) > 0 else "booked"
        session.requested_date = None
        session.requested_time = None
        self.db.commit()
        self.db.refresh(session)
        logger.info(f"❌ Reschedule request for session {session.id} rejected: {reason or 'no reason given'}")
        return session
