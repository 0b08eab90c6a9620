"""Payment service - Checkout orders, gateway callbacks and webhook events"""

import json
import logging
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...auth import AuthContext
from ...models import (
    CREDIT_AVAILABLE,
    LOCK_PAYMENT_PENDING,
    LOCK_SLOT_HELD,
    PAYMENT_PENDING,
    Payment,
    utcnow,
)
from ...services.payu_service import payu_service
from ...webhook_security import WebhookSignatureError
from ..booking.repository import BookingRepository
from ..booking.service import BookingService, ReconciliationResult
from ..booking.slot_lock_service import SLOT_UNAVAILABLE_DETAIL

logger = logging.getLogger(__name__)

EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_FAILED = "payment.failed"

INVALID_SIGNATURE_DETAIL = {"code": "INVALID_SIGNATURE", "message": "Payment signature verification failed"}


def _parse_amount(value) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail="Invalid amount") from e


class PaymentService:
    """Service layer for payment business logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BookingRepository()
        self.booking = BookingService(db)

    # ========================================================================
    # Checkout
    # ========================================================================

    def create_order(
        self, context: AuthContext, quote_id: str, first_name: Optional[str], phone: Optional[str]
    ) -> dict:
        """
        Start checkout for a held slot: sign the gateway parameters, record a pending
        payment and give the lock extra time to finish paying.
        """
        if not payu_service.is_available():
            raise HTTPException(status_code=503, detail="Payment gateway not configured")

        lock = self.repo.get_lock_by_order_id(self.db, quote_id)
        if not lock or lock.client_id != context.client_id:
            raise HTTPException(status_code=404, detail="Reservation not found")
        if lock.status not in (LOCK_SLOT_HELD, LOCK_PAYMENT_PENDING) or lock.expires_at <= utcnow():
            raise HTTPException(
                status_code=409,
                detail={"code": "RESERVATION_EXPIRED", "message": "Slot reservation expired. Please book again."},
            )
        if not self.booking.availability.is_slot_available(
            lock.psychologist_id, lock.scheduled_date, lock.scheduled_time, ignore_order_id=quote_id
        ):
            raise HTTPException(status_code=409, detail=SLOT_UNAVAILABLE_DETAIL)

        payment = self.repo.get_payment_by_transaction_id(self.db, quote_id)
        if payment and payment.status != PAYMENT_PENDING:
            raise HTTPException(status_code=409, detail="This order has already been processed")

        client = self.repo.get_client(self.db, lock.client_id)
        psychologist = self.booking.availability.get_psychologist(lock.psychologist_id)
        session_type = "Package Session" if lock.package_id else "Individual Session"
        date_str = lock.scheduled_date.isoformat()

        params = payu_service.build_checkout_params(
            transaction_id=quote_id,
            amount=lock.amount,
            product_info=f"{session_type} with {psychologist.full_name}",
            first_name=first_name or client.first_name,
            email=client.email,
            phone=phone or client.phone_number,
            scheduled_date=date_str,
            psychologist_id=lock.psychologist_id,
            client_id=lock.client_id,
            package_id=lock.package_id,
            scheduled_time=lock.scheduled_time,
        )

        if not payment:
            payment = Payment(
                transaction_id=quote_id,
                client_id=lock.client_id,
                psychologist_id=lock.psychologist_id,
                package_id=lock.package_id,
                scheduled_date=lock.scheduled_date,
                scheduled_time=lock.scheduled_time,
                amount=lock.amount,
                status=PAYMENT_PENDING,
            )
            self.db.add(payment)
            try:
                self.db.flush()
            except IntegrityError as e:
                # A concurrent checkout for the same quote inserted the payment first
                self.db.rollback()
                payment = self.repo.get_payment_by_transaction_id(self.db, quote_id)
                if not payment or payment.status != PAYMENT_PENDING:
                    raise HTTPException(status_code=409, detail="This order has already been processed") from e
                logger.info(f"💳 Reusing payment {payment.id} from concurrent checkout of {quote_id}")
        self.booking.locks.update_lock_status(quote_id, LOCK_PAYMENT_PENDING, commit=False)
        self.db.commit()
        self.db.refresh(payment)
        self.booking.locks.extend_lock(quote_id)

        logger.info(f"💳 Checkout started: {quote_id} for ₹{lock.amount}")
        return {
            "paymentId": payment.id,
            "transactionId": quote_id,
            "amount": lock.amount,
            "paymentUrl": payu_service.payment_url,
            "params": params,
            "expiresAt": lock.expires_at,
        }

    # ========================================================================
    # Gateway callbacks
    # ========================================================================

    def _validate_callback(self, params: dict) -> str:
        try:
            payu_service.validate_callback(params)
        except WebhookSignatureError as e:
            logger.warning(f"🚫 Rejected payment callback for {params.get('txnid')}: {e}")
            raise HTTPException(status_code=400, detail=INVALID_SIGNATURE_DETAIL) from e
        transaction_id = params.get("txnid")
        if not transaction_id:
            raise HTTPException(status_code=400, detail="Missing txnid")
        return transaction_id

    def handle_success_callback(self, params: dict) -> ReconciliationResult:
        """Browser return from checkout; the hash proves the parameters came from the gateway"""
        transaction_id = self._validate_callback(params)
        if str(params.get("status", "success")).lower() != "success":
            logger.info(f"💳 Success callback for {transaction_id} carried status={params.get('status')}")
            self.booking.mark_payment_failed(transaction_id, gateway_response=params)
            raise HTTPException(status_code=400, detail="Payment was not successful")
        return self.booking.process_captured_payment(
            transaction_id,
            gateway_payment_id=params.get("mihpayid") or None,
            amount=_parse_amount(params.get("amount")),
            gateway_response=params,
        )

    def handle_failure_callback(self, params: dict) -> dict:
        transaction_id = self._validate_callback(params)
        payment = self.booking.mark_payment_failed(transaction_id, gateway_response=params)
        if not payment:
            raise HTTPException(
                status_code=404,
                detail={"code": "PAYMENT_NOT_FOUND", "message": "Payment not found"},
            )
        return {"status": payment.status, "transactionId": transaction_id}

    def handle_webhook(self, raw_body: bytes) -> tuple[dict, list[int]]:
        """
        Dispatch a verified server-to-server event. Unknown event types are
        acknowledged so the gateway stops retrying them.
        """
        try:
            body = json.loads(raw_body or b"{}")
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

        event_type = body.get("event")
        data = body.get("payload") or {}
        transaction_id = data.get("txnid")
        logger.info(f"📨 Payment webhook event: {event_type} ({transaction_id})")

        if event_type not in (EVENT_PAYMENT_CAPTURED, EVENT_PAYMENT_FAILED):
            return {"status": "ignored", "event": event_type}, []
        if not transaction_id:
            raise HTTPException(status_code=400, detail="Missing txnid")

        if event_type == EVENT_PAYMENT_FAILED:
            payment = self.booking.mark_payment_failed(transaction_id, gateway_response=data)
            if not payment:
                raise HTTPException(
                    status_code=404,
                    detail={"code": "PAYMENT_NOT_FOUND", "message": "Payment not found"},
                )
            return {"status": "payment_failed", "transactionId": transaction_id}, []

        result = self.booking.process_captured_payment(
            transaction_id,
            gateway_payment_id=data.get("mihpayid") or None,
            amount=_parse_amount(data.get("amount")),
            gateway_response=data,
        )
        return (
            {
                "status": result.outcome,
                "transactionId": transaction_id,
                "sessionId": result.session.id if result.session else None,
            },
            result.event_ids,
        )

    # ========================================================================
    # Queries
    # ========================================================================

    def get_payment(self, context: AuthContext, transaction_id: str) -> Payment:
        payment = self.repo.get_payment_by_transaction_id(self.db, transaction_id)
        if not payment or (not context.is_admin and payment.client_id != context.client_id):
            raise HTTPException(
                status_code=404,
                detail={"code": "PAYMENT_NOT_FOUND", "message": "Payment not found"},
            )
        return payment

    def list_credits(self, context: AuthContext) -> list[Payment]:
        return self.repo.list_credits(self.db, context.client_id, CREDIT_AVAILABLE)
