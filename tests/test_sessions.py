"""Tests for reschedule, cancellation, admin review and credit/package bookings."""

from datetime import timedelta

import pytest

from helpers import book_session, captured_event, open_slots, send_webhook

from therapy_booking.domain.availability.service import AvailabilityService
from therapy_booking.domain.sessions import service as sessions_module
from therapy_booking.models import (
    CREDIT_AVAILABLE,
    CREDIT_CONSUMED,
    PAYMENT_SUCCESS,
    ClientPackage,
    OutboxEvent,
    Payment,
    Psychologist,
    TherapySession,
)
from therapy_booking.shared.scheduling import now_local, slot_start, today_local


def _soon_slot(hours: int = 3) -> tuple:
    """A whole-hour slot a few hours from now, inside the reschedule cutoff"""
    start = (now_local() + timedelta(hours=hours)).replace(minute=0, second=0, microsecond=0)
    return start.date(), start.strftime("%H:%M")


def _outbox_types(db) -> list[str]:
    db.expire_all()
    return [e.event_type for e in db.query(OutboxEvent).order_by(OutboxEvent.id).all()]


def _reload(db, session_id: int) -> TherapySession:
    db.expire_all()
    return db.query(TherapySession).filter(TherapySession.id == session_id).first()


class TestSessionQueries:
    def test_client_lists_own_sessions(self, client, db, seed, login):
        mine = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        book_session(db, seed.psychologist.id, seed.client_b.id, seed.day, "11:00")
        login(seed.ctx_a)
        response = client.get("/sessions")
        assert [s["id"] for s in response.json()] == [mine.id]

    def test_psychologist_lists_calendar(self, client, db, seed, login):
        book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        book_session(db, seed.psychologist.id, seed.client_b.id, seed.day, "11:00")
        login(seed.ctx_psych)
        assert len(client.get("/sessions").json()) == 2

    def test_other_clients_session_is_hidden(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        login(seed.ctx_b)
        assert client.get(f"/sessions/{session.id}").status_code == 404
        login(seed.ctx_psych)
        assert client.get(f"/sessions/{session.id}").status_code == 200


class TestReschedule:
    def test_direct_reschedule_moves_slot(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "11:00"}
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["status"] == "rescheduled"
        assert body["time"] == "11:00"
        assert body["rescheduleCount"] == 1
        assert open_slots(db, seed.psychologist.id, seed.day) == ["10:00"]

        assert _outbox_types(db) == ["session_rescheduled"]
        event = db.query(OutboxEvent).one()
        assert event.payload["previous_time"] == "10:00"

    def test_reschedule_clears_calendar_links(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        session.google_calendar_event_id = "evt_123"
        session.google_meet_link = "https://meet.google.com/abc-defg-hij"
        db.commit()
        login(seed.ctx_a)
        body = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "11:00"}
        ).json()
        assert body["meetLink"] is None
        assert db.query(OutboxEvent).one().payload["previous_event_id"] == "evt_123"

    def test_inside_cutoff_becomes_request(self, client, db, seed, login):
        soon_day, soon_time = _soon_slot()
        session = book_session(db, seed.psychologist.id, seed.client_a.id, soon_day, soon_time)
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "11:00"}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "reschedule_requested"
        assert body["requestedDate"] == seed.day.isoformat()
        assert body["requestedTime"] == "11:00"
        assert body["time"] == soon_time
        assert open_slots(db, seed.psychologist.id, seed.day) == ["10:00", "11:00"]
        assert _outbox_types(db) == ["reschedule_requested"]

    def test_too_close_target_is_rejected(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        target = now_local() + timedelta(minutes=30)
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule",
            json={"date": target.date().isoformat(), "time": target.strftime("%H:%M")},
        )
        assert response.status_code == 400

    def test_exactly_at_cutoff_becomes_request(self, client, db, seed, login, monkeypatch):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        frozen = slot_start(seed.day, "10:00") - timedelta(hours=24)
        monkeypatch.setattr(sessions_module, "now_local", lambda: frozen)
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "11:00"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "reschedule_requested"

    def test_close_target_inside_cutoff_is_still_a_request(self, client, db, seed, login, monkeypatch):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "12:00")
        # 30 minutes before the 11:00 target, well inside the minimum lead time
        frozen = slot_start(seed.day, "10:30")
        monkeypatch.setattr(sessions_module, "now_local", lambda: frozen)
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "11:00"}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "reschedule_requested"
        assert body["requestedTime"] == "11:00"

    def test_unavailable_target(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "15:00"}
        )
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "SLOT_UNAVAILABLE"

    def test_same_slot_is_rejected(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "10:00"}
        )
        assert response.status_code == 400

    def test_cancelled_session_cannot_move(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00", status="cancelled")
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "11:00"}
        )
        assert response.status_code == 400

    def test_started_session_cannot_move(self, client, db, seed, login):
        yesterday = today_local() - timedelta(days=1)
        session = book_session(db, seed.psychologist.id, seed.client_a.id, yesterday, "10:00")
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "11:00"}
        )
        assert response.status_code == 400

    def test_repeat_reschedules_need_approval(self, client, db, seed, login, monkeypatch):
        monkeypatch.setattr(sessions_module, "RESCHEDULE_APPROVAL_AFTER_COUNT", 1)
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00", status="rescheduled")
        session.reschedule_count = 1
        db.commit()
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "11:00"}
        )
        assert response.json()["status"] == "reschedule_requested"

    def test_first_reschedule_under_limit_is_direct(self, client, db, seed, login, monkeypatch):
        monkeypatch.setattr(sessions_module, "RESCHEDULE_APPROVAL_AFTER_COUNT", 1)
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        login(seed.ctx_a)
        response = client.post(
            f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "11:00"}
        )
        assert response.json()["status"] == "rescheduled"


class TestAdminReview:
    def _requested(self, client, db, seed, login) -> TherapySession:
        soon_day, soon_time = _soon_slot()
        session = book_session(db, seed.psychologist.id, seed.client_a.id, soon_day, soon_time)
        login(seed.ctx_a)
        client.post(f"/sessions/{session.id}/reschedule", json={"date": seed.day.isoformat(), "time": "11:00"})
        return session

    def test_lists_pending_requests(self, client, db, seed, login):
        session = self._requested(client, db, seed, login)
        login(seed.ctx_admin)
        response = client.get("/admin/reschedule-requests")
        assert [s["id"] for s in response.json()] == [session.id]

    def test_approve_applies_move(self, client, db, seed, login):
        session = self._requested(client, db, seed, login)
        old_day, old_time = session.scheduled_date, session.scheduled_time
        login(seed.ctx_admin)
        response = client.post(f"/admin/reschedule-requests/{session.id}/approve")
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["status"] == "rescheduled"
        assert body["date"] == seed.day.isoformat()
        assert body["time"] == "11:00"
        assert body["requestedDate"] is None
        assert open_slots(db, seed.psychologist.id, seed.day) == ["10:00"]
        assert old_time in open_slots(db, seed.psychologist.id, old_day)

    def test_approve_fails_when_target_taken(self, client, db, seed, login):
        session = self._requested(client, db, seed, login)
        book_session(db, seed.psychologist.id, seed.client_b.id, seed.day, "11:00")
        login(seed.ctx_admin)
        response = client.post(f"/admin/reschedule-requests/{session.id}/approve")
        assert response.status_code == 409

    def test_reject_restores_status(self, client, db, seed, login):
        session = self._requested(client, db, seed, login)
        login(seed.ctx_admin)
        response = client.post(f"/admin/reschedule-requests/{session.id}/reject", json={"reason": "Too late"})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "booked"
        assert body["requestedTime"] is None

    def test_reject_keeps_rescheduled_status(self, client, db, seed, login):
        session = self._requested(client, db, seed, login)
        row = _reload(db, session.id)
        row.reschedule_count = 2
        db.commit()
        login(seed.ctx_admin)
        body = client.post(f"/admin/reschedule-requests/{session.id}/reject").json()
        assert body["status"] == "rescheduled"

    def test_unknown_request(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        login(seed.ctx_admin)
        assert client.post(f"/admin/reschedule-requests/{session.id}/approve").status_code == 404

    def test_clients_cannot_review(self, client, seed, login):
        login(seed.ctx_a)
        assert client.get("/admin/reschedule-requests").status_code == 403


class TestCancel:
    def test_cancel_releases_slot(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        login(seed.ctx_a)
        response = client.post(f"/sessions/{session.id}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert open_slots(db, seed.psychologist.id, seed.day) == ["10:00", "11:00"]
        assert _outbox_types(db) == ["session_cancelled"]

    def test_cancelled_slot_can_be_rebooked(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00")
        login(seed.ctx_a)
        client.post(f"/sessions/{session.id}/cancel")
        assert AvailabilityService(db).is_slot_available(seed.psychologist.id, seed.day, "10:00")

    def test_only_booked_sessions(self, client, db, seed, login):
        session = book_session(db, seed.psychologist.id, seed.client_a.id, seed.day, "10:00", status="rescheduled")
        login(seed.ctx_a)
        assert client.post(f"/sessions/{session.id}/cancel").status_code == 400

    def test_past_session(self, client, db, seed, login):
        yesterday = today_local() - timedelta(days=1)
        session = book_session(db, seed.psychologist.id, seed.client_a.id, yesterday, "10:00")
        login(seed.ctx_a)
        assert client.post(f"/sessions/{session.id}/cancel").status_code == 400


class TestBookWithCredit:
    def _credit(self, db, seed, credit_status=CREDIT_AVAILABLE, client_id=None,
                transaction_id="TXN_1700000000000_credit001"):
        db.add(
            Payment(
                transaction_id=transaction_id,
                client_id=client_id or seed.client_a.id,
                psychologist_id=seed.psychologist.id,
                scheduled_date=seed.day,
                scheduled_time="09:00",
                amount=1500,
                status=PAYMENT_SUCCESS,
                credit_status=credit_status,
            )
        )
        db.commit()
        return transaction_id

    def _book(self, client, seed, transaction_id, psychologist_id=None, time_slot="10:00"):
        return client.post(
            "/sessions/book-with-credit",
            json={
                "transactionId": transaction_id,
                "psychologistId": psychologist_id or seed.psychologist.id,
                "date": seed.day.isoformat(),
                "time": time_slot,
            },
        )

    def test_books_slot_and_consumes_credit(self, client, db, seed, login):
        transaction_id = self._credit(db, seed)
        login(seed.ctx_a)
        response = self._book(client, seed, transaction_id)
        assert response.status_code == 200
        payment = db.query(Payment).filter(Payment.transaction_id == transaction_id).one()
        db.refresh(payment)
        assert payment.credit_status == CREDIT_CONSUMED
        assert payment.session_id == response.json()["id"]
        assert open_slots(db, seed.psychologist.id, seed.day) == ["11:00"]

    def test_credit_cannot_be_used_twice(self, client, db, seed, login):
        transaction_id = self._credit(db, seed)
        login(seed.ctx_a)
        assert self._book(client, seed, transaction_id).status_code == 200
        response = self._book(client, seed, transaction_id, time_slot="11:00")
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "CREDIT_ALREADY_USED"

    def test_other_psychologist(self, client, db, seed, login):
        other = Psychologist(
            first_name="Nikhil", last_name="Rao", email="nikhil@example.com", individual_session_price=1200
        )
        db.add(other)
        db.commit()
        transaction_id = self._credit(db, seed)
        login(seed.ctx_a)
        response = self._book(client, seed, transaction_id, psychologist_id=other.id)
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "CREDIT_PSYCHOLOGIST_MISMATCH"

    def test_other_clients_credit(self, client, db, seed, login):
        transaction_id = self._credit(db, seed, client_id=seed.client_b.id)
        login(seed.ctx_a)
        assert self._book(client, seed, transaction_id).status_code == 404

    def test_payment_without_credit(self, client, db, seed, login):
        transaction_id = self._credit(db, seed, credit_status=None)
        login(seed.ctx_a)
        assert self._book(client, seed, transaction_id).status_code == 400

    def test_taken_slot(self, client, db, seed, login):
        book_session(db, seed.psychologist.id, seed.client_b.id, seed.day, "10:00")
        transaction_id = self._credit(db, seed)
        login(seed.ctx_a)
        assert self._book(client, seed, transaction_id).status_code == 409
        payment = db.query(Payment).filter(Payment.transaction_id == transaction_id).one()
        db.refresh(payment)
        assert payment.credit_status == CREDIT_AVAILABLE


class TestPackageSessions:
    @pytest.fixture
    def purchased(self, client, db, seed, checkout):
        order_id = checkout(seed.ctx_a, seed.psychologist.id, seed.day, "10:00", package_id=seed.package.id)
        send_webhook(client, captured_event(order_id, 4000))
        db.expire_all()
        return db.query(ClientPackage).one()

    def test_lists_client_packages(self, client, seed, purchased):
        body = client.get("/client-packages").json()
        assert len(body) == 1
        assert body[0]["packageName"] == "Three Session Pack"
        assert body[0]["totalSessions"] == 3
        assert body[0]["remainingSessions"] == 2
        assert body[0]["consumedSessions"] == 1

    def test_book_remaining_sessions(self, client, db, seed, purchased):
        later_day = seed.day + timedelta(days=1)
        AvailabilityService(db).release_slot(seed.psychologist.id, later_day, "10:00")
        db.commit()

        first = client.post(
            "/sessions/book-remaining",
            json={"clientPackageId": purchased.id, "date": seed.day.isoformat(), "time": "11:00"},
        )
        assert first.status_code == 200, first.text
        assert first.json()["price"] == 0
        assert first.json()["clientPackageId"] == purchased.id

        second = client.post(
            "/sessions/book-remaining",
            json={"clientPackageId": purchased.id, "date": later_day.isoformat(), "time": "10:00"},
        )
        assert second.status_code == 200

        db.expire_all()
        client_package = db.query(ClientPackage).one()
        assert client_package.remaining_sessions == 0
        assert client_package.status == "completed"

        third = client.post(
            "/sessions/book-remaining",
            json={"clientPackageId": purchased.id, "date": later_day.isoformat(), "time": "11:00"},
        )
        assert third.status_code == 400

    def test_taken_slot_keeps_remaining_count(self, client, db, seed, purchased):
        book_session(db, seed.psychologist.id, seed.client_b.id, seed.day, "11:00")
        response = client.post(
            "/sessions/book-remaining",
            json={"clientPackageId": purchased.id, "date": seed.day.isoformat(), "time": "11:00"},
        )
        assert response.status_code == 409
        db.expire_all()
        assert db.query(ClientPackage).one().remaining_sessions == 2

    def test_other_clients_package(self, client, seed, login, purchased):
        login(seed.ctx_b)
        response = client.post(
            "/sessions/book-remaining",
            json={"clientPackageId": purchased.id, "date": seed.day.isoformat(), "time": "11:00"},
        )
        assert response.status_code == 404
