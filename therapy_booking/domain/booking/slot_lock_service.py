"""
Slot Lock Service
Short-lived reservations keyed by gateway order id. The partial unique index on
slot_locks lets at most one active lock exist per slot; this service turns index
violations into retries or conflicts.
"""

import logging
import time
from datetime import date, timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import ABANDONED_PAYMENT_MINUTES, SLOT_HOLD_EXTENSION_MINUTES, SLOT_HOLD_MINUTES, SLOT_LOCK_MAX_RETRIES
from ...models import (
    ACTIVE_LOCK_STATUSES,
    LOCK_EXPIRED,
    LOCK_FAILED,
    LOCK_PAYMENT_PENDING,
    LOCK_PAYMENT_SUCCESS,
    LOCK_SLOT_HELD,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    SlotLock,
    utcnow,
)
from .repository import BookingRepository

logger = logging.getLogger(__name__)

SLOT_UNAVAILABLE_DETAIL = {
    "code": "SLOT_UNAVAILABLE",
    "message": "This slot was just booked by someone else. Please pick another time.",
}


class SlotLockService:
    """Service layer for slot lock lifecycle"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BookingRepository()

    def get_lock_by_order_id(self, order_id: str) -> Optional[SlotLock]:
        return self.repo.get_lock_by_order_id(self.db, order_id)

    def hold_slot(
        self,
        psychologist_id: int,
        client_id: int,
        day: date,
        time_slot: str,
        order_id: str,
        amount: float,
        package_id: Optional[int] = None,
    ) -> SlotLock:
        """
        Hold a slot for one order.

        A retry by the same client and order extends the hold. A live lock held by
        another order is a 409. A unique-index violation means another request won
        between our read and insert; re-check and try again with a short backoff.
        """
        for attempt in range(1, SLOT_LOCK_MAX_RETRIES + 1):
            now = utcnow()
            existing = self.repo.get_active_lock_for_slot(self.db, psychologist_id, day, time_slot)

            if existing:
                if existing.order_id == order_id and existing.client_id == client_id:
                    existing.expires_at = now + timedelta(minutes=SLOT_HOLD_MINUTES)
                    self.db.commit()
                    logger.info(f"🔒 Slot hold refreshed for order {order_id}")
                    return existing
                if existing.status != LOCK_PAYMENT_SUCCESS and existing.expires_at <= now:
                    self._expire(existing)
                    self.db.flush()
                else:
                    logger.info(
                        f"🔒 Slot {day} {time_slot} for psychologist {psychologist_id} held by order {existing.order_id}"
                    )
                    raise HTTPException(status_code=409, detail=SLOT_UNAVAILABLE_DETAIL)

            lock = SlotLock(
                order_id=order_id,
                psychologist_id=psychologist_id,
                client_id=client_id,
                package_id=package_id,
                scheduled_date=day,
                scheduled_time=time_slot,
                amount=amount,
                status=LOCK_SLOT_HELD,
                expires_at=now + timedelta(minutes=SLOT_HOLD_MINUTES),
            )
            self.db.add(lock)
            try:
                self.db.commit()
                self.db.refresh(lock)
                logger.info(f"🔒 Slot held: {day} {time_slot} psychologist={psychologist_id} order={order_id}")
                return lock
            except IntegrityError:
                self.db.rollback()
                logger.warning(f"⚠️ Slot lock conflict on attempt {attempt} for order {order_id}")
                time.sleep(0.05 * attempt)

        raise HTTPException(status_code=409, detail=SLOT_UNAVAILABLE_DETAIL)

    def update_lock_status(self, order_id: str, status: str, commit: bool = True, **fields) -> Optional[SlotLock]:
        lock = self.repo.get_lock_by_order_id(self.db, order_id)
        if not lock:
            logger.warning(f"⚠️ No slot lock for order {order_id}")
            return None
        previous = lock.status
        lock.status = status
        for key, value in fields.items():
            setattr(lock, key, value)
        if commit:
            self.db.commit()
        else:
            self.db.flush()
        logger.info(f"🔒 Lock {order_id}: {previous} -> {status}")
        return lock

    def extend_lock(self, order_id: str, minutes: int = SLOT_HOLD_EXTENSION_MINUTES) -> Optional[SlotLock]:
        """Give a lock that reached checkout time to finish paying"""
        lock = self.repo.get_lock_by_order_id(self.db, order_id)
        if not lock or lock.status not in (LOCK_SLOT_HELD, LOCK_PAYMENT_PENDING):
            return None
        lock.expires_at = max(lock.expires_at, utcnow()) + timedelta(minutes=minutes)
        self.db.commit()
        return lock

    def release_lock(self, order_id: str, reason: str = "PAYMENT_FAILED") -> Optional[SlotLock]:
        """Fail a lock that has not captured money yet; the slot becomes bookable again"""
        lock = self.repo.get_lock_by_order_id(self.db, order_id)
        if not lock or lock.status not in (LOCK_SLOT_HELD, LOCK_PAYMENT_PENDING):
            return lock
        lock.status = LOCK_FAILED
        lock.failure_reason = reason
        self.db.commit()
        logger.info(f"🔓 Lock {order_id} released ({reason})")
        return lock

    def _expire(self, lock: SlotLock) -> None:
        lock.status = LOCK_EXPIRED
        lock.failure_reason = "HOLD_EXPIRED"
        payment = self.repo.get_payment_by_transaction_id(self.db, lock.order_id)
        if payment and payment.status == PAYMENT_PENDING:
            payment.status = PAYMENT_FAILED

    def release_expired_locks(self) -> int:
        """Expire holds whose payment never arrived; their pending payments fail with them"""
        expired = self.repo.get_expired_holds(self.db, utcnow())
        for lock in expired:
            self._expire(lock)
        if expired:
            self.db.commit()
            logger.info(f"⏰ Expired {len(expired)} slot lock(s)")
        return len(expired)

    def cleanup_abandoned_payments(self) -> int:
        """Fail pending payments left behind without a live slot lock"""
        cutoff = utcnow() - timedelta(minutes=ABANDONED_PAYMENT_MINUTES)
        now = utcnow()
        abandoned = 0
        for payment in self.repo.get_stale_pending_payments(self.db, cutoff):
            lock = self.repo.get_lock_by_order_id(self.db, payment.transaction_id)
            if lock and lock.status in ACTIVE_LOCK_STATUSES and (
                lock.status == LOCK_PAYMENT_SUCCESS or lock.expires_at > now
            ):
                continue
            payment.status = PAYMENT_FAILED
            abandoned += 1
        if abandoned:
            self.db.commit()
            logger.info(f"🧹 Marked {abandoned} abandoned payment(s) as failed")
        return abandoned
