"""Tests for the ARQ maintenance and outbox tasks."""

import asyncio
from datetime import timedelta

from helpers import active_sessions, captured_event, get_lock, get_payment, open_slots, send_webhook

from therapy_booking import worker
from therapy_booking.domain.availability import service as availability_module
from therapy_booking.models import (
    LOCK_EXPIRED,
    LOCK_PAYMENT_PENDING,
    LOCK_PAYMENT_SUCCESS,
    LOCK_SESSION_CREATED,
    OutboxEvent,
    utcnow,
)
from therapy_booking.services import notification_service


def _run(task, *args):
    return asyncio.run(task({}, *args))


def _event(db) -> OutboxEvent:
    db.expire_all()
    return db.query(OutboxEvent).order_by(OutboxEvent.id).first()


class TestSlotLockExpiry:
    def test_expires_unpaid_holds(self, db, seed, checkout):
        order_id = checkout(seed.ctx_a, seed.psychologist.id, seed.day, "10:00")
        lock = get_lock(db, order_id)
        lock.expires_at = utcnow() - timedelta(minutes=1)
        db.commit()

        assert _run(worker.release_expired_slot_locks_task) == {"expired": 1}
        lock = get_lock(db, order_id)
        assert lock.status == LOCK_EXPIRED
        assert lock.failure_reason == "HOLD_EXPIRED"
        assert get_payment(db, order_id).status == "failed"

    def test_live_holds_are_kept(self, db, seed, checkout):
        order_id = checkout(seed.ctx_a, seed.psychologist.id, seed.day, "10:00")
        assert _run(worker.release_expired_slot_locks_task) == {"expired": 0}
        assert get_lock(db, order_id).status == LOCK_PAYMENT_PENDING


class TestAbandonedPayments:
    def test_fails_old_payment_without_live_hold(self, db, seed, checkout):
        order_id = checkout(seed.ctx_a, seed.psychologist.id, seed.day, "10:00")
        # Both rows are loaded before editing; the helpers expire the session
        payment = get_payment(db, order_id)
        lock = get_lock(db, order_id)
        payment.created_at = utcnow() - timedelta(minutes=30)
        lock.expires_at = utcnow() - timedelta(minutes=5)
        db.commit()

        assert _run(worker.cleanup_abandoned_payments_task) == {"abandoned": 1}
        assert get_payment(db, order_id).status == "failed"

    def test_keeps_payment_with_live_hold(self, db, seed, checkout):
        order_id = checkout(seed.ctx_a, seed.psychologist.id, seed.day, "10:00")
        payment = get_payment(db, order_id)
        payment.created_at = utcnow() - timedelta(minutes=30)
        db.commit()

        assert _run(worker.cleanup_abandoned_payments_task) == {"abandoned": 0}
        assert get_payment(db, order_id).status == "pending"


class TestPaidLockRecovery:
    def test_creates_missing_session(self, db, seed, checkout):
        order_id = checkout(seed.ctx_a, seed.psychologist.id, seed.day, "10:00")
        # Capture recorded, then the process died before the session insert
        lock = get_lock(db, order_id)
        lock.status = LOCK_PAYMENT_SUCCESS
        lock.gateway_payment_id = "mih_recovered"
        db.commit()

        summary = _run(worker.recover_paid_slot_locks_task)
        assert summary == {"checked": 1, "booked": 1, "credited": 0, "errors": 0}
        assert get_lock(db, order_id).status == LOCK_SESSION_CREATED
        assert len(active_sessions(db, seed.psychologist.id, seed.day, "10:00")) == 1
        assert get_payment(db, order_id).gateway_payment_id == "mih_recovered"

    def test_nothing_to_recover(self, db, seed):
        assert _run(worker.recover_paid_slot_locks_task)["checked"] == 0


class TestOutboxDispatch:
    def test_dispatches_pending_event(self, client, db, seed, checkout, monkeypatch):
        delivered = []

        async def fake_dispatch(_db, event):
            delivered.append(event.event_type)
            return {"email_sent": 2}

        monkeypatch.setattr(notification_service, "dispatch_event", fake_dispatch)
        order_id = checkout(seed.ctx_a, seed.psychologist.id, seed.day, "10:00")
        send_webhook(client, captured_event(order_id, 1500))
        event_id = _event(db).id

        assert _run(worker.dispatch_outbox_event_task, event_id) == {"status": "dispatched", "attempts": 1}
        assert delivered == ["booking_confirmed"]
        event = _event(db)
        assert event.dispatched_at is not None

        # A second delivery is a no-op
        assert _run(worker.dispatch_outbox_event_task, event_id) == {"status": "dispatched"}
        assert delivered == ["booking_confirmed"]

    def test_failure_is_retried_then_abandoned(self, client, db, seed, checkout, monkeypatch):
        async def failing_dispatch(_db, event):
            raise RuntimeError("smtp down")

        monkeypatch.setattr(notification_service, "dispatch_event", failing_dispatch)
        monkeypatch.setattr(worker, "OUTBOX_MAX_ATTEMPTS", 2)
        order_id = checkout(seed.ctx_a, seed.psychologist.id, seed.day, "10:00")
        send_webhook(client, captured_event(order_id, 1500))
        event_id = _event(db).id

        assert _run(worker.dispatch_outbox_event_task, event_id) == {"status": "pending", "attempts": 1}
        assert _event(db).last_error == "smtp down"
        assert _run(worker.dispatch_outbox_event_task, event_id) == {"status": "failed", "attempts": 2}

    def test_missing_event(self, db, seed):
        assert _run(worker.dispatch_outbox_event_task, 9999) == {"status": "missing"}

    def test_drain_picks_up_stale_events(self, client, db, seed, checkout, monkeypatch):
        async def fake_dispatch(_db, event):
            return {}

        monkeypatch.setattr(notification_service, "dispatch_event", fake_dispatch)
        order_id = checkout(seed.ctx_a, seed.psychologist.id, seed.day, "10:00")
        send_webhook(client, captured_event(order_id, 1500))

        # Fresh events are left to the request's own enqueue
        assert _run(worker.drain_outbox_task) == {"processed": 0}

        event = _event(db)
        event.created_at = utcnow() - timedelta(minutes=5)
        db.commit()
        assert _run(worker.drain_outbox_task) == {"processed": 1}
        assert _event(db).status == "dispatched"


class TestCalendarSync:
    def test_removes_colliding_slots(self, db, seed, monkeypatch):
        seed.psychologist.google_calendar_credentials = "encrypted-blob"
        db.commit()
        day = seed.day.isoformat()

        async def fake_busy(psychologist, _db, event_day):
            if event_day.isoformat() != day:
                return []
            return [{"summary": "Workshop", "start": f"{day}T11:00:00+05:30", "end": f"{day}T12:00:00+05:30"}]

        monkeypatch.setattr(availability_module, "list_busy_events", fake_busy)
        assert _run(worker.sync_psychologist_calendars_task) == {"psychologists": 1, "removed": 1}
        assert open_slots(db, seed.psychologist.id, seed.day) == ["10:00"]
