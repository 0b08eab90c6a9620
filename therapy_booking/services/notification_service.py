"""
Booking Notification Service
Turns outbox events into calendar invites, emails and WhatsApp messages.
Each channel is attempted independently; one failing never stops the others.
"""

import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from ..config import ADMIN_NOTIFICATION_EMAIL, SESSION_DURATION_MINUTES
from ..email_service import send_email
from ..email_templates import (
    booking_confirmed_template,
    credit_issued_template,
    reschedule_request_template,
    session_cancelled_template,
    session_rescheduled_template,
)
from ..models import OutboxEvent, Payment, TherapySession
from ..shared.scheduling import slot_end, slot_start
from . import outbox
from .google_calendar_service import create_meet_event, delete_calendar_event
from .whatsapp_service import send_whatsapp

logger = logging.getLogger(__name__)


def session_event_summary(client_name: str, psychologist_name: str) -> str:
    """Calendar title for a booked session; availability sync skips events carrying the platform name"""
    return f"Little Care: Therapy session - {client_name} with {psychologist_name}"


class NotificationResult(dict):
    """Per-channel outcome: counts of sent messages plus collected errors"""

    def __init__(self):
        super().__init__(email_sent=0, whatsapp_sent=0, calendar=None, errors=[])


async def _send_email_safely(
    result: NotificationResult, label: str, to: Optional[str], subject: str, mjml_content: str
) -> None:
    if not to:
        logger.debug(f"⚠️ No email address for {label}")
        return
    try:
        await send_email(to=to, subject=subject, mjml_content=mjml_content, tag=label)
        result["email_sent"] += 1
    except Exception as e:
        result["errors"].append(f"email:{label}: {e}")
        logger.error(f"❌ Failed to send {label} email to {to}: {e}")


async def _send_whatsapp_safely(
    result: NotificationResult, label: str, phone: Optional[str], body: str
) -> None:
    if not phone:
        return
    try:
        sent, reason = await send_whatsapp(phone, body, label)
        if sent:
            result["whatsapp_sent"] += 1
        elif reason:
            result["errors"].append(f"whatsapp:{label}: {reason}")
    except Exception as e:
        result["errors"].append(f"whatsapp:{label}: {e}")
        logger.error(f"❌ Failed to send {label} WhatsApp: {e}")


async def _attach_meeting(db: Session, session: TherapySession, result: NotificationResult) -> None:
    """Create the calendar event + Meet link for the session's current slot"""
    psychologist = session.psychologist
    client = session.client
    start = slot_start(session.scheduled_date, session.scheduled_time)
    meeting = await create_meet_event(
        psychologist,
        db,
        summary=session_event_summary(client.full_name, psychologist.full_name),
        description=f"{session.session_type} booked through Little Care",
        start=start,
        end=slot_end(session.scheduled_date, session.scheduled_time, SESSION_DURATION_MINUTES),
        attendees=[client.email, psychologist.email],
    )
    session.google_calendar_event_id = meeting["event_id"]
    session.google_meet_link = meeting["meet_link"]
    session.google_calendar_link = meeting["event_link"]
    db.commit()
    result["calendar"] = "fallback" if meeting["fallback"] else "created"


async def notify_booking_confirmed(db: Session, session: TherapySession) -> NotificationResult:
    result = NotificationResult()
    if not session.google_meet_link:
        await _attach_meeting(db, session, result)

    client, psychologist = session.client, session.psychologist
    day, time_slot = session.scheduled_date.isoformat(), session.scheduled_time

    await _send_email_safely(
        result,
        "booking_confirmed_client",
        client.email,
        "Your session is confirmed",
        booking_confirmed_template(client.full_name, psychologist.full_name, day, time_slot, session.google_meet_link),
    )
    await _send_email_safely(
        result,
        "booking_confirmed_psychologist",
        psychologist.email,
        f"New session with {client.full_name}",
        booking_confirmed_template(psychologist.full_name, client.full_name, day, time_slot, session.google_meet_link),
    )
    await _send_whatsapp_safely(
        result,
        "booking_confirmed",
        client.phone_number,
        f"Hi {client.first_name}, your session with {psychologist.full_name} is confirmed for "
        f"{day} at {time_slot}. Join: {session.google_meet_link}",
    )
    await _send_whatsapp_safely(
        result,
        "booking_confirmed",
        psychologist.phone,
        f"New session booked: {client.full_name} on {day} at {time_slot}.",
    )
    return result


async def notify_session_rescheduled(
    db: Session, session: TherapySession, previous_event_id: Optional[str]
) -> NotificationResult:
    result = NotificationResult()
    # Calendar events cannot be moved in place; replace them
    if previous_event_id:
        await delete_calendar_event(session.psychologist, db, previous_event_id)
    await _attach_meeting(db, session, result)

    client = session.client
    day, time_slot = session.scheduled_date.isoformat(), session.scheduled_time
    for name, email in ((client.full_name, client.email), (session.psychologist.full_name, session.psychologist.email)):
        await _send_email_safely(
            result,
            "session_rescheduled",
            email,
            "Your session has been rescheduled",
            session_rescheduled_template(name, day, time_slot, session.google_meet_link),
        )
    await _send_whatsapp_safely(
        result,
        "session_rescheduled",
        client.phone_number,
        f"Hi {client.first_name}, your session is now on {day} at {time_slot}. Join: {session.google_meet_link}",
    )
    return result


async def notify_reschedule_requested(db: Session, session: TherapySession) -> NotificationResult:
    result = NotificationResult()
    client = session.client
    await _send_email_safely(
        result,
        "reschedule_requested_admin",
        ADMIN_NOTIFICATION_EMAIL,
        f"Reschedule approval needed: {client.full_name}",
        reschedule_request_template(
            client.full_name,
            session.psychologist.full_name,
            session.scheduled_date.isoformat(),
            session.scheduled_time,
            session.requested_date.isoformat() if session.requested_date else "",
            session.requested_time or "",
        ),
    )
    await _send_whatsapp_safely(
        result,
        "reschedule_requested",
        client.phone_number,
        f"Hi {client.first_name}, we received your reschedule request. Our team will confirm shortly.",
    )
    return result


async def notify_session_cancelled(db: Session, session: TherapySession) -> NotificationResult:
    result = NotificationResult()
    if session.google_calendar_event_id:
        await delete_calendar_event(session.psychologist, db, session.google_calendar_event_id)

    day, time_slot = session.scheduled_date.isoformat(), session.scheduled_time
    for name, email in (
        (session.client.full_name, session.client.email),
        (session.psychologist.full_name, session.psychologist.email),
    ):
        await _send_email_safely(
            result, "session_cancelled", email, "Session cancelled", session_cancelled_template(name, day, time_slot)
        )
    await _send_whatsapp_safely(
        result,
        "session_cancelled",
        session.psychologist.phone,
        f"Session with {session.client.full_name} on {day} at {time_slot} was cancelled.",
    )
    return result


async def notify_credit_issued(db: Session, payment: Payment) -> NotificationResult:
    result = NotificationResult()
    client = payment.client
    await _send_email_safely(
        result,
        "credit_issued",
        client.email,
        "Your payment has been saved as credit",
        credit_issued_template(client.full_name, payment.amount, payment.transaction_id),
    )
    await _send_whatsapp_safely(
        result,
        "credit_issued",
        client.phone_number,
        f"Hi {client.first_name}, the slot you paid for was just taken. Your payment "
        f"({payment.transaction_id}) is saved as credit for another slot.",
    )
    return result


async def dispatch_event(db: Session, event: OutboxEvent) -> Optional[NotificationResult]:
    """Route an outbox event to its notifier. Returns None when the target row is gone."""
    payload = event.payload or {}
    session_handlers: dict[str, Callable[[TherapySession], Awaitable[NotificationResult]]] = {
        outbox.BOOKING_CONFIRMED: lambda s: notify_booking_confirmed(db, s),
        outbox.SESSION_RESCHEDULED: lambda s: notify_session_rescheduled(db, s, payload.get("previous_event_id")),
        outbox.RESCHEDULE_REQUESTED: lambda s: notify_reschedule_requested(db, s),
        outbox.SESSION_CANCELLED: lambda s: notify_session_cancelled(db, s),
    }

    if event.event_type in session_handlers:
        session = db.query(TherapySession).filter(TherapySession.id == payload.get("session_id")).first()
        if not session:
            logger.warning(f"⚠️ Outbox event #{event.id}: session {payload.get('session_id')} not found")
            return None
        return await session_handlers[event.event_type](session)

    if event.event_type == outbox.CREDIT_ISSUED:
        payment = db.query(Payment).filter(Payment.id == payload.get("payment_id")).first()
        if not payment:
            logger.warning(f"⚠️ Outbox event #{event.id}: payment {payload.get('payment_id')} not found")
            return None
        return await notify_credit_issued(db, payment)

    logger.warning(f"⚠️ Unknown outbox event type: {event.event_type}")
    return None
