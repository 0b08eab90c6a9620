"""Booking repository - Database operations for slot locks, payments and packages"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import (
    ACTIVE_LOCK_STATUSES,
    LOCK_PAYMENT_PENDING,
    LOCK_PAYMENT_SUCCESS,
    LOCK_SLOT_HELD,
    PAYMENT_PENDING,
    Client,
    ClientPackage,
    Package,
    Payment,
    SlotLock,
    TherapySession,
)


class BookingRepository:
    """Repository for reservation and payment database operations"""

    # ------------------------------------------------------------------
    # Slot locks
    # ------------------------------------------------------------------

    @staticmethod
    def get_lock_by_order_id(db: Session, order_id: str) -> Optional[SlotLock]:
        return db.query(SlotLock).filter(SlotLock.order_id == order_id).first()

    @staticmethod
    def get_active_lock_for_slot(
        db: Session, psychologist_id: int, day: date, time_slot: str
    ) -> Optional[SlotLock]:
        return (
            db.query(SlotLock)
            .filter(
                SlotLock.psychologist_id == psychologist_id,
                SlotLock.scheduled_date == day,
                SlotLock.scheduled_time == time_slot,
                SlotLock.status.in_(ACTIVE_LOCK_STATUSES),
            )
            .first()
        )

    @staticmethod
    def get_expired_holds(db: Session, now: datetime) -> list[SlotLock]:
        return (
            db.query(SlotLock)
            .filter(
                SlotLock.status.in_((LOCK_SLOT_HELD, LOCK_PAYMENT_PENDING)),
                SlotLock.expires_at < now,
            )
            .all()
        )

    @staticmethod
    def get_paid_locks_without_session(db: Session, since: datetime, limit: int) -> list[SlotLock]:
        return (
            db.query(SlotLock)
            .filter(
                SlotLock.status == LOCK_PAYMENT_SUCCESS,
                SlotLock.session_id.is_(None),
                SlotLock.updated_at >= since,
            )
            .order_by(SlotLock.updated_at)
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    @staticmethod
    def get_payment_by_transaction_id(db: Session, transaction_id: str) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.transaction_id == transaction_id).first()

    @staticmethod
    def get_payment_by_gateway_id(db: Session, gateway_payment_id: str) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.gateway_payment_id == gateway_payment_id).first()

    @staticmethod
    def get_stale_pending_payments(db: Session, cutoff: datetime) -> list[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.status == PAYMENT_PENDING, Payment.created_at < cutoff)
            .all()
        )

    @staticmethod
    def list_credits(db: Session, client_id: int, credit_status: str) -> list[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.client_id == client_id, Payment.credit_status == credit_status)
            .order_by(Payment.completed_at.desc())
            .all()
        )

    # ------------------------------------------------------------------
    # Sessions and packages
    # ------------------------------------------------------------------

    @staticmethod
    def get_session(db: Session, session_id: Optional[int]) -> Optional[TherapySession]:
        if not session_id:
            return None
        return db.query(TherapySession).filter(TherapySession.id == session_id).first()

    @staticmethod
    def find_booked_session(
        db: Session, psychologist_id: int, client_id: int, day: date, time_slot: str
    ) -> Optional[TherapySession]:
        return (
            db.query(TherapySession)
            .filter(
                TherapySession.psychologist_id == psychologist_id,
                TherapySession.client_id == client_id,
                TherapySession.scheduled_date == day,
                TherapySession.scheduled_time == time_slot,
                TherapySession.status == "booked",
            )
            .order_by(TherapySession.id.desc())
            .first()
        )

    @staticmethod
    def get_client(db: Session, client_id: int) -> Optional[Client]:
        return db.query(Client).filter(Client.id == client_id).first()

    @staticmethod
    def get_package(db: Session, package_id: Optional[int]) -> Optional[Package]:
        if not package_id:
            return None
        return db.query(Package).filter(Package.id == package_id).first()

    @staticmethod
    def get_client_package_by_first_session(db: Session, session_id: int) -> Optional[ClientPackage]:
        return db.query(ClientPackage).filter(ClientPackage.first_session_id == session_id).first()
