"""Tests for turning outbox events into calendar invites, emails and WhatsApp messages."""

import asyncio

import pytest

from helpers import book_session

from therapy_booking import email_service
from therapy_booking.config import FALLBACK_MEET_LINK
from therapy_booking.email_service import build_message
from therapy_booking.models import CREDIT_AVAILABLE, PAYMENT_SUCCESS, Payment
from therapy_booking.services import notification_service, outbox


@pytest.fixture
def sent(monkeypatch):
    """Capture outgoing emails and WhatsApp messages instead of sending them"""
    record = {"emails": [], "whatsapp": []}

    async def fake_email(to, subject, mjml_content, tag=None):
        record["emails"].append((to, subject))
        return {"id": "email_1"}

    async def fake_whatsapp(phone, body, message_type):
        record["whatsapp"].append((phone, message_type))
        return True, None

    monkeypatch.setattr(notification_service, "send_email", fake_email)
    monkeypatch.setattr(notification_service, "send_whatsapp", fake_whatsapp)
    return record


def _dispatch(db, event_type: str, payload: dict):
    event = outbox.record_event(db, event_type, payload)
    db.commit()
    return asyncio.run(notification_service.dispatch_event(db, event))


class TestBookingConfirmed:
    def test_uses_fallback_link_without_calendar(self, db, seed, sent):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        result = _dispatch(db, outbox.BOOKING_CONFIRMED, {"session_id": session.id})

        assert result["calendar"] == "fallback"
        db.refresh(session)
        assert session.google_meet_link == FALLBACK_MEET_LINK
        assert session.google_calendar_event_id is None
        assert result["email_sent"] == 2
        assert result["whatsapp_sent"] == 2
        assert {to for to, _ in sent["emails"]} == {"ravi@example.com", "asha@example.com"}

    def test_existing_link_is_kept(self, db, seed, sent):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        session.google_meet_link = "https://meet.google.com/abc-defg-hij"
        db.commit()
        result = _dispatch(db, outbox.BOOKING_CONFIRMED, {"session_id": session.id})
        assert result["calendar"] is None
        db.refresh(session)
        assert session.google_meet_link == "https://meet.google.com/abc-defg-hij"

    def test_email_failure_does_not_stop_whatsapp(self, db, seed, sent, monkeypatch):
        async def broken_email(to, subject, mjml_content, tag=None):
            raise RuntimeError("Email service not configured")

        monkeypatch.setattr(notification_service, "send_email", broken_email)
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        result = _dispatch(db, outbox.BOOKING_CONFIRMED, {"session_id": session.id})

        assert result["email_sent"] == 0
        assert result["whatsapp_sent"] == 2
        assert len([e for e in result["errors"] if e.startswith("email:")]) == 2

    def test_skipped_whatsapp_is_reported(self, db, seed, sent, monkeypatch):
        async def disabled_whatsapp(phone, body, message_type):
            return False, "WhatsApp disabled"

        monkeypatch.setattr(notification_service, "send_whatsapp", disabled_whatsapp)
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        result = _dispatch(db, outbox.BOOKING_CONFIRMED, {"session_id": session.id})
        assert result["whatsapp_sent"] == 0
        assert "whatsapp:booking_confirmed: WhatsApp disabled" in result["errors"]


class TestOtherEvents:
    def test_reschedule_replaces_calendar_event(self, db, seed, sent, monkeypatch):
        deleted = []

        async def fake_delete(psychologist, _db, event_id):
            deleted.append(event_id)
            return True

        monkeypatch.setattr(notification_service, "delete_calendar_event", fake_delete)
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "11:00", status="rescheduled")
        result = _dispatch(
            db, outbox.SESSION_RESCHEDULED, {"session_id": session.id, "previous_event_id": "evt_old"}
        )
        assert deleted == ["evt_old"]
        assert result["calendar"] == "fallback"
        assert result["email_sent"] == 2

    def test_cancellation_removes_calendar_event(self, db, seed, sent, monkeypatch):
        deleted = []

        async def fake_delete(psychologist, _db, event_id):
            deleted.append(event_id)
            return True

        monkeypatch.setattr(notification_service, "delete_calendar_event", fake_delete)
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00", status="cancelled")
        session.google_calendar_event_id = "evt_123"
        db.commit()
        result = _dispatch(db, outbox.SESSION_CANCELLED, {"session_id": session.id})
        assert deleted == ["evt_123"]
        assert result["email_sent"] == 2
        assert sent["whatsapp"] == [("+919800000001", "session_cancelled")]

    def test_reschedule_request_notifies_admin(self, db, seed, sent, monkeypatch):
        monkeypatch.setattr(notification_service, "ADMIN_NOTIFICATION_EMAIL", "ops@example.com")
        session = book_session(
            db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00", status="reschedule_requested"
        )
        session.requested_date = seed.day
        session.requested_time = "11:00"
        db.commit()
        _dispatch(db, outbox.RESCHEDULE_REQUESTED, {"session_id": session.id})
        assert sent["emails"][0][0] == "ops@example.com"
        assert sent["whatsapp"] == [("+919800000002", "reschedule_requested")]

    def test_credit_issued(self, db, seed, sent):
        payment = Payment(
            transaction_id="TXN_1700000000000_creditmsg",
            client_id=seed.client_a.id,
            psychologist_id=seed.psychologist.id,
            scheduled_date=seed.day,
            scheduled_time="10:00",
            amount=1500,
            status=PAYMENT_SUCCESS,
            credit_status=CREDIT_AVAILABLE,
        )
        db.add(payment)
        db.commit()
        result = _dispatch(db, outbox.CREDIT_ISSUED, {"payment_id": payment.id})
        assert result["email_sent"] == 1
        assert sent["emails"] == [("ravi@example.com", "Your payment has been saved as credit")]

    def test_missing_session(self, db, seed, sent):
        assert _dispatch(db, outbox.BOOKING_CONFIRMED, {"session_id": 9999}) is None
        assert sent["emails"] == []

    def test_unknown_event_type(self, db, seed, sent):
        assert _dispatch(db, "refund_issued", {}) is None


class TestEmailMessage:
    def test_tagged_message(self):
        message = build_message(
            "ravi@example.com", "Your session is confirmed", "<p>hi</p>", "booking_confirmed_client"
        )
        assert message["to"] == ["ravi@example.com"]
        assert message["tags"] == [{"name": "notification", "value": "booking_confirmed_client"}]

    def test_untagged_message(self):
        assert "tags" not in build_message("ravi@example.com", "Hello", "<p>hi</p>")

    def test_unconfigured_resend_raises(self, monkeypatch):
        monkeypatch.setattr(email_service, "RESEND_API_KEY", None)
        with pytest.raises(Exception, match="not configured"):
            asyncio.run(email_service.send_email("ravi@example.com", "Hello", "<mjml></mjml>"))
