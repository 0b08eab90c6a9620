"""
Booking service - Reservation, payment reconciliation and status polling

Reconciliation is the one place where concurrent requests race for the same slot:
the gateway webhook, the browser success callback, a client status poll and the
recovery cron may all try to turn one captured payment into a session. The active
slot unique index on sessions decides the winner; any loser keeps its money as a
credit instead of failing.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...auth import AuthContext
from ...config import PAYMENT_STATUS_GRACE_SECONDS, RECOVERY_BATCH_LIMIT, RECOVERY_LOOKBACK_HOURS
from ...models import (
    ACTIVE_LOCK_STATUSES,
    CREDIT_AVAILABLE,
    LOCK_EXPIRED,
    LOCK_FAILED,
    LOCK_PAYMENT_PENDING,
    LOCK_PAYMENT_SUCCESS,
    LOCK_SESSION_CREATED,
    LOCK_SLOT_HELD,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESS,
    ClientPackage,
    OutboxEvent,
    Package,
    Payment,
    Psychologist,
    SlotLock,
    TherapySession,
    utcnow,
)
from ...services import outbox
from ...services.payu_service import GATEWAY_CAPTURED, GATEWAY_FAILED, generate_transaction_id, payu_service
from ...shared.scheduling import now_local, slot_start
from ...shared.validators import parse_date
from ..availability.service import AvailabilityService
from ..sessions.schemas import to_session_response
from .repository import BookingRepository
from .slot_lock_service import SLOT_UNAVAILABLE_DETAIL, SlotLockService

logger = logging.getLogger(__name__)

OUTCOME_BOOKED = "booked"
OUTCOME_ALREADY_PROCESSED = "already_processed"
OUTCOME_CREDIT_ISSUED = "credit_issued"

CREDIT_FAILURE_REASON = "SLOT_TAKEN_CREDIT_ISSUED"

STATUS_MESSAGES = {
    "SLOT_HELD": "Slot reserved, waiting for payment...",
    "PAYMENT_PENDING": "Payment in progress...",
    "PAYMENT_SUCCESS": "Payment successful, creating session...",
    "COMPLETED": "Booking confirmed!",
    "FAILED": "Payment failed. Please try again.",
    "EXPIRED": "Slot reservation expired. Please book again.",
}
CREDIT_MESSAGE = "This slot was just booked by someone else. Your payment has been saved as credit."


@dataclass
class ReconciliationResult:
    outcome: str
    payment: Payment
    session: Optional[TherapySession] = None
    event_ids: list[int] = field(default_factory=list)

    @property
    def credit_issued(self) -> bool:
        return self.outcome == OUTCOME_CREDIT_ISSUED


def derive_session_count(package: Optional[Package]) -> int:
    """session_count when set, else the number in package_type ("3_sessions"), else 1"""
    if package is None:
        return 1
    if package.session_count:
        return package.session_count
    match = re.search(r"\d+", package.package_type or "")
    if match and int(match.group()) > 0:
        return int(match.group())
    return 1


def resolve_price(psychologist: Psychologist, package: Optional[Package]) -> tuple[float, str]:
    """Price and session type for a booking; an unpriced individual session is an error"""
    if package is not None:
        return float(package.price), "Package Session"
    if psychologist.individual_session_price is None:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "PRICE_NOT_CONFIGURED",
                "message": "This psychologist has not set an individual session price yet.",
            },
        )
    return float(psychologist.individual_session_price), "Individual Session"


def amounts_match(expected: float, received: float) -> bool:
    """Compare in paise so float formatting never causes a false mismatch"""
    return round(float(expected) * 100) == round(float(received) * 100)


class BookingService:
    """Service layer for reservation and reconciliation business logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BookingRepository()
        self.availability = AvailabilityService(db)
        self.locks = SlotLockService(db)

    # ========================================================================
    # Reservation
    # ========================================================================

    def reserve_slot(
        self, context: AuthContext, psychologist_id: int, day_value: str, time_slot: str, package_id: Optional[int]
    ) -> dict:
        """
        Hold a slot and quote its price. The returned quote id is the order id the
        client pays against; no session exists until the payment is captured.
        """
        day = parse_date(day_value)
        psychologist = self.availability.get_psychologist(psychologist_id)

        package = None
        if package_id:
            package = self.repo.get_package(self.db, package_id)
            if not package or package.psychologist_id != psychologist_id:
                raise HTTPException(status_code=404, detail="Package not found")

        price, session_type = resolve_price(psychologist, package)

        if slot_start(day, time_slot) <= now_local():
            raise HTTPException(status_code=400, detail="Cannot book a slot in the past")

        # A client retrying their own reservation keeps the same order
        existing = self.repo.get_active_lock_for_slot(self.db, psychologist_id, day, time_slot)
        if (
            existing
            and existing.client_id == context.client_id
            and existing.status in (LOCK_SLOT_HELD, LOCK_PAYMENT_PENDING)
            and existing.amount == price
        ):
            order_id = existing.order_id
        else:
            order_id = generate_transaction_id()

        if not self.availability.is_slot_available(psychologist_id, day, time_slot, ignore_order_id=order_id):
            raise HTTPException(status_code=409, detail=SLOT_UNAVAILABLE_DETAIL)

        lock = self.locks.hold_slot(
            psychologist_id=psychologist_id,
            client_id=context.client_id,
            day=day,
            time_slot=time_slot,
            order_id=order_id,
            amount=price,
            package_id=package.id if package else None,
        )
        logger.info(f"🧾 Quote {order_id}: {session_type} with psychologist {psychologist_id} at ₹{price}")
        return {
            "quoteId": lock.order_id,
            "price": price,
            "sessionType": session_type,
            "psychologistId": psychologist_id,
            "packageId": lock.package_id,
            "date": day.isoformat(),
            "time": time_slot,
            "expiresAt": lock.expires_at,
        }

    # ========================================================================
    # Reconciliation
    # ========================================================================

    def process_captured_payment(
        self,
        transaction_id: str,
        gateway_payment_id: Optional[str] = None,
        amount: Optional[float] = None,
        gateway_response: Optional[dict] = None,
    ) -> ReconciliationResult:
        """
        Turn a captured payment into exactly one session, or into a credit when the
        slot is gone. Safe to call any number of times for the same transaction.
        """
        payment = self.repo.get_payment_by_transaction_id(self.db, transaction_id)
        if not payment:
            logger.error(f"❌ Captured payment for unknown transaction {transaction_id}")
            raise HTTPException(
                status_code=404,
                detail={"code": "PAYMENT_NOT_FOUND", "message": "Payment not found"},
            )

        if payment.status == PAYMENT_SUCCESS:
            logger.info(f"💳 Payment {transaction_id} already processed")
            outcome = OUTCOME_CREDIT_ISSUED if payment.credit_status else OUTCOME_ALREADY_PROCESSED
            return ReconciliationResult(outcome, payment, self.repo.get_session(self.db, payment.session_id))

        if gateway_payment_id:
            duplicate = self.repo.get_payment_by_gateway_id(self.db, gateway_payment_id)
            if duplicate and duplicate.id != payment.id:
                logger.warning(
                    f"⚠️ Gateway payment {gateway_payment_id} already recorded on {duplicate.transaction_id}"
                )
                return ReconciliationResult(
                    OUTCOME_ALREADY_PROCESSED, duplicate, self.repo.get_session(self.db, duplicate.session_id)
                )

        lock = self.repo.get_lock_by_order_id(self.db, transaction_id)

        if amount is not None and not amounts_match(payment.amount, amount):
            logger.error(f"❌ Amount mismatch on {transaction_id}: expected {payment.amount}, got {amount}")
            payment.status = PAYMENT_FAILED
            payment.gateway_response = gateway_response
            if lock and lock.status in ACTIVE_LOCK_STATUSES:
                self.locks.update_lock_status(
                    transaction_id, LOCK_FAILED, commit=False, failure_reason="AMOUNT_MISMATCH"
                )
            self.db.commit()
            raise HTTPException(
                status_code=400,
                detail={"code": "AMOUNT_MISMATCH", "message": "Paid amount does not match the order"},
            )

        # Record the capture before touching the slot so a crash here is recoverable
        if gateway_payment_id:
            payment.gateway_payment_id = gateway_payment_id
        if gateway_response is not None:
            payment.gateway_response = gateway_response
        if lock and lock.status in (LOCK_SLOT_HELD, LOCK_PAYMENT_PENDING):
            self.locks.update_lock_status(
                transaction_id, LOCK_PAYMENT_SUCCESS, commit=False, gateway_payment_id=gateway_payment_id
            )
        self.db.commit()

        if not self.availability.is_slot_available(
            payment.psychologist_id, payment.scheduled_date, payment.scheduled_time, ignore_order_id=transaction_id
        ):
            return self._issue_credit(payment, lock)

        try:
            session, event = self._create_session(payment, lock)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"⚠️ Slot for {transaction_id} was taken during session insert")
            return self._issue_credit(payment, lock)

        logger.info(f"✅ Session {session.id} created for payment {transaction_id}")
        return ReconciliationResult(OUTCOME_BOOKED, payment, session, [event.id])

    def _create_session(self, payment: Payment, lock: Optional[SlotLock]) -> tuple[TherapySession, OutboxEvent]:
        package = self.repo.get_package(self.db, payment.package_id)
        session = TherapySession(
            psychologist_id=payment.psychologist_id,
            client_id=payment.client_id,
            package_id=payment.package_id,
            scheduled_date=payment.scheduled_date,
            scheduled_time=payment.scheduled_time,
            status="booked",
            session_type="Package Session" if package else "Individual Session",
            price=payment.amount,
        )
        self.db.add(session)
        self.db.flush()

        self.availability.consume_slot(payment.psychologist_id, payment.scheduled_date, payment.scheduled_time)

        payment.status = PAYMENT_SUCCESS
        payment.session_id = session.id
        payment.completed_at = utcnow()
        if lock:
            self.locks.update_lock_status(lock.order_id, LOCK_SESSION_CREATED, commit=False, session_id=session.id)

        if package:
            client_package = self.ensure_client_package(session, package)
            session.client_package_id = client_package.id

        event = outbox.record_event(
            self.db, outbox.BOOKING_CONFIRMED, {"session_id": session.id, "payment_id": payment.id}
        )
        return session, event

    def ensure_client_package(self, session: TherapySession, package: Package) -> ClientPackage:
        """Package purchase record for the session that bought it; created once"""
        existing = self.repo.get_client_package_by_first_session(self.db, session.id)
        if existing:
            return existing
        total = derive_session_count(package)
        client_package = ClientPackage(
            client_id=session.client_id,
            psychologist_id=session.psychologist_id,
            package_id=package.id,
            first_session_id=session.id,
            total_sessions=total,
            remaining_sessions=total - 1,
            status="active" if total > 1 else "completed",
        )
        self.db.add(client_package)
        self.db.flush()
        logger.info(f"📦 Client package {client_package.id}: {total - 1} of {total} sessions remaining")
        return client_package

    def _issue_credit(self, payment: Payment, lock: Optional[SlotLock]) -> ReconciliationResult:
        """The money was captured but the slot is gone: keep the payment as credit"""
        payment.status = PAYMENT_SUCCESS
        payment.credit_status = CREDIT_AVAILABLE
        payment.session_id = None
        payment.completed_at = utcnow()
        if lock and lock.status != LOCK_SESSION_CREATED:
            self.locks.update_lock_status(
                lock.order_id, LOCK_FAILED, commit=False, failure_reason=CREDIT_FAILURE_REASON
            )
        event = outbox.record_event(self.db, outbox.CREDIT_ISSUED, {"payment_id": payment.id})
        self.db.commit()
        logger.warning(
            f"💳 Slot {payment.scheduled_date} {payment.scheduled_time} taken; payment "
            f"{payment.transaction_id} kept as credit"
        )
        return ReconciliationResult(OUTCOME_CREDIT_ISSUED, payment, None, [event.id])

    def mark_payment_failed(self, transaction_id: str, gateway_response: Optional[dict] = None) -> Optional[Payment]:
        """Gateway reported failure: fail the pending payment and free the held slot"""
        payment = self.repo.get_payment_by_transaction_id(self.db, transaction_id)
        if payment and payment.status == PAYMENT_PENDING:
            payment.status = PAYMENT_FAILED
            if gateway_response is not None:
                payment.gateway_response = gateway_response
            self.db.commit()
            logger.info(f"💳 Payment {transaction_id} marked failed")
        self.locks.release_lock(transaction_id, reason="PAYMENT_FAILED")
        return payment

    def recover_paid_locks(self) -> dict:
        """Retry reconciliation for captured payments whose session never got created"""
        since = utcnow() - timedelta(hours=RECOVERY_LOOKBACK_HOURS)
        stuck = self.repo.get_paid_locks_without_session(self.db, since, RECOVERY_BATCH_LIMIT)
        summary = {"checked": len(stuck), "booked": 0, "credited": 0, "errors": 0, "event_ids": []}
        for lock in stuck:
            try:
                result = self.process_captured_payment(lock.order_id, lock.gateway_payment_id)
            except HTTPException as e:
                summary["errors"] += 1
                logger.error(f"❌ Recovery failed for order {lock.order_id}: {e.detail}")
                continue
            summary["event_ids"].extend(result.event_ids)
            if result.outcome == OUTCOME_BOOKED:
                summary["booked"] += 1
            elif result.credit_issued:
                summary["credited"] += 1
        if stuck:
            logger.info(f"🔁 Recovery: {summary}")
        return summary

    # ========================================================================
    # Status polling
    # ========================================================================

    async def get_booking_status(self, context: AuthContext, order_id: str) -> tuple[dict, list[int]]:
        """
        Resolve the client-facing status of an order. Returns the payload and any
        outbox event ids produced by a reconciliation the poll triggered.
        """
        lock = self.repo.get_lock_by_order_id(self.db, order_id)
        payment = self.repo.get_payment_by_transaction_id(self.db, order_id)
        if not lock and not payment:
            raise HTTPException(status_code=404, detail="Booking not found")

        owner_id = lock.client_id if lock else payment.client_id
        if not context.is_admin and context.client_id != owner_id:
            raise HTTPException(status_code=404, detail="Booking not found")

        event_ids: list[int] = []
        if (
            lock
            and lock.status in (LOCK_SLOT_HELD, LOCK_PAYMENT_PENDING)
            and payment
            and payment.status == PAYMENT_PENDING
            and (utcnow() - lock.created_at).total_seconds() > PAYMENT_STATUS_GRACE_SECONDS
        ):
            event_ids = await self._poll_gateway(order_id)
            self.db.refresh(lock)
            self.db.refresh(payment)

        if lock:
            return self._status_from_lock(lock, payment), event_ids
        return self._status_from_payment(payment), event_ids

    async def _poll_gateway(self, order_id: str) -> list[int]:
        """Webhook is late: ask the gateway directly"""
        gateway = await payu_service.verify_transaction(order_id)
        if gateway is None:
            return []
        if gateway["status"] == GATEWAY_CAPTURED:
            logger.info(f"🔍 Poll found captured payment for {order_id}; reconciling")
            try:
                result = self.process_captured_payment(
                    order_id, gateway.get("gateway_payment_id"), gateway.get("amount")
                )
            except HTTPException as e:
                logger.warning(f"⚠️ Reconciliation from poll failed for {order_id}: {e.detail}")
                return []
            return result.event_ids
        if gateway["status"] == GATEWAY_FAILED:
            self.mark_payment_failed(order_id)
        return []

    def _status_from_lock(self, lock: SlotLock, payment: Optional[Payment]) -> dict:
        status = "COMPLETED" if lock.status == LOCK_SESSION_CREATED else lock.status
        payload = self._base_status(lock.order_id, status, payment)
        payload["lockStatus"] = lock.status
        payload["expiresAt"] = lock.expires_at if lock.status in (LOCK_SLOT_HELD, LOCK_PAYMENT_PENDING) else None

        if status == "COMPLETED":
            session = (
                self.repo.get_session(self.db, payment.session_id if payment else None)
                or self.repo.get_session(self.db, lock.session_id)
                or self.repo.find_booked_session(
                    self.db, lock.psychologist_id, lock.client_id, lock.scheduled_date, lock.scheduled_time
                )
            )
            if session:
                payload["session"] = to_session_response(session)
            else:
                logger.warning(f"⚠️ Session for order {lock.order_id} not found; returning fallback details")
                payload["fallbackSession"] = {
                    "psychologistId": lock.psychologist_id,
                    "date": lock.scheduled_date.isoformat(),
                    "time": lock.scheduled_time,
                    "status": "booked",
                }
        elif lock.status in (LOCK_FAILED, LOCK_EXPIRED) and payment and payment.credit_status:
            payload["status"] = LOCK_FAILED
            payload["message"] = CREDIT_MESSAGE
        return payload

    def _status_from_payment(self, payment: Payment) -> dict:
        """Older orders without a lock row are read from the payment alone"""
        if payment.status == PAYMENT_SUCCESS and not payment.credit_status:
            payload = self._base_status(payment.transaction_id, "COMPLETED", payment)
            session = self.repo.get_session(self.db, payment.session_id)
            if session:
                payload["session"] = to_session_response(session)
            else:
                payload["fallbackSession"] = {
                    "psychologistId": payment.psychologist_id,
                    "date": payment.scheduled_date.isoformat(),
                    "time": payment.scheduled_time,
                    "status": "booked",
                }
            return payload
        if payment.status == PAYMENT_SUCCESS:
            payload = self._base_status(payment.transaction_id, "FAILED", payment)
            payload["message"] = CREDIT_MESSAGE
            return payload
        if payment.status == PAYMENT_FAILED:
            return self._base_status(payment.transaction_id, "FAILED", payment)
        return self._base_status(payment.transaction_id, "PAYMENT_PENDING", payment)

    @staticmethod
    def _base_status(order_id: str, status: str, payment: Optional[Payment]) -> dict:
        credit = None
        if payment and payment.credit_status:
            credit = {
                "transactionId": payment.transaction_id,
                "amount": payment.amount,
                "creditStatus": payment.credit_status,
                "psychologistId": payment.psychologist_id,
            }
        return {
            "orderId": order_id,
            "status": status,
            "message": STATUS_MESSAGES[status],
            "lockStatus": None,
            "paymentStatus": payment.status if payment else None,
            "expiresAt": None,
            "session": None,
            "fallbackSession": None,
            "credit": credit,
        }
