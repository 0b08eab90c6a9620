"""Session repository - Database operations for booked sessions and packages"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import CREDIT_AVAILABLE, CREDIT_CONSUMED, ClientPackage, Payment, TherapySession


class SessionRepository:
    """Repository for session database operations"""

    @staticmethod
    def get_by_id(db: Session, session_id: int) -> Optional[TherapySession]:
        return db.query(TherapySession).filter(TherapySession.id == session_id).first()

    @staticmethod
    def list_for_client(db: Session, client_id: int) -> list[TherapySession]:
        return (
            db.query(TherapySession)
            .filter(TherapySession.client_id == client_id)
            .order_by(TherapySession.scheduled_date.desc(), TherapySession.scheduled_time.desc())
            .all()
        )

    @staticmethod
    def list_for_psychologist(db: Session, psychologist_id: int) -> list[TherapySession]:
        return (
            db.query(TherapySession)
            .filter(TherapySession.psychologist_id == psychologist_id)
            .order_by(TherapySession.scheduled_date.desc(), TherapySession.scheduled_time.desc())
            .all()
        )

    @staticmethod
    def list_by_status(db: Session, status: str) -> list[TherapySession]:
        return (
            db.query(TherapySession)
            .filter(TherapySession.status == status)
            .order_by(TherapySession.scheduled_date, TherapySession.scheduled_time)
            .all()
        )

    @staticmethod
    def get_client_package(db: Session, client_package_id: int) -> Optional[ClientPackage]:
        return db.query(ClientPackage).filter(ClientPackage.id == client_package_id).first()

    @staticmethod
    def list_client_packages(db: Session, client_id: int) -> list[ClientPackage]:
        return (
            db.query(ClientPackage)
            .filter(ClientPackage.client_id == client_id)
            .order_by(ClientPackage.purchased_at.desc())
            .all()
        )

    @staticmethod
    def consume_credit(db: Session, payment_id: int, session_id: int) -> bool:
        """Compare-and-set: only one caller can move a credit from available to consumed"""
        updated = (
            db.query(Payment)
            .filter(Payment.id == payment_id, Payment.credit_status == CREDIT_AVAILABLE)
            .update(
                {Payment.credit_status: CREDIT_CONSUMED, Payment.session_id: session_id},
                synchronize_session=False,
            )
        )
        return updated == 1

    @staticmethod
    def decrement_remaining(db: Session, client_package_id: int) -> bool:
        updated = (
            db.query(ClientPackage)
            .filter(ClientPackage.id == client_package_id, ClientPackage.remaining_sessions > 0)
            .update(
                {ClientPackage.remaining_sessions: ClientPackage.remaining_sessions - 1},
                synchronize_session=False,
            )
        )
        return updated == 1
