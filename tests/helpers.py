"""Helpers shared by the API tests."""

import json
from datetime import date
from typing import Optional

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from therapy_booking.models import Availability, Payment, SlotLock, TherapySession
from therapy_booking.webhook_security import create_webhook_signature

WEBHOOK_SECRET = "whsec_test_secret"


def send_webhook(client: TestClient, body: dict, secret: str = WEBHOOK_SECRET):
    raw = json.dumps(body).encode("utf-8")
    return client.post(
        "/payment/webhook",
        content=raw,
        headers={"Content-Type": "application/json", "X-Webhook-Signature": create_webhook_signature(secret, raw)},
    )


def captured_event(transaction_id: str, amount: float, gateway_payment_id: Optional[str] = None) -> dict:
    return {
        "event": "payment.captured",
        "payload": {
            "txnid": transaction_id,
            "mihpayid": gateway_payment_id or f"mih_{transaction_id}",
            "amount": f"{amount:.2f}",
        },
    }


def book_session(
    db: Session, psychologist_id: int, client_id: int, day: date, time_slot: str, status: str = "booked"
) -> TherapySession:
    """Insert a session directly and take its slot off the open list."""
    session = TherapySession(
        psychologist_id=psychologist_id,
        client_id=client_id,
        scheduled_date=day,
        scheduled_time=time_slot,
        status=status,
        session_type="Individual Session",
        price=1500.0,
    )
    db.add(session)
    availability = (
        db.query(Availability)
        .filter(Availability.psychologist_id == psychologist_id, Availability.date == day)
        .first()
    )
    if availability and time_slot in availability.time_slots:
        availability.time_slots = [s for s in availability.time_slots if s != time_slot]
    db.commit()
    db.refresh(session)
    return session


def open_slots(db: Session, psychologist_id: int, day: date) -> list[str]:
    db.expire_all()
    availability = (
        db.query(Availability)
        .filter(Availability.psychologist_id == psychologist_id, Availability.date == day)
        .first()
    )
    return list(availability.time_slots) if availability else []


def get_payment(db: Session, transaction_id: str) -> Payment:
    db.expire_all()
    return db.query(Payment).filter(Payment.transaction_id == transaction_id).first()


def get_lock(db: Session, order_id: str) -> SlotLock:
    db.expire_all()
    return db.query(SlotLock).filter(SlotLock.order_id == order_id).first()


def active_sessions(db: Session, psychologist_id: int, day: date, time_slot: str) -> list[TherapySession]:
    from therapy_booking.models import ACTIVE_SESSION_STATUSES

    db.expire_all()
    return (
        db.query(TherapySession)
        .filter(
            TherapySession.psychologist_id == psychologist_id,
            TherapySession.scheduled_date == day,
            TherapySession.scheduled_time == time_slot,
            TherapySession.status.in_(ACTIVE_SESSION_STATUSES),
        )
        .all()
    )
