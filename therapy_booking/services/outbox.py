"""
Outbox for booking side effects
Events are written in the same transaction as the booking change and handed
to the ARQ worker after the response is sent.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..config import OUTBOX_ENQUEUE_ENABLED
from ..models import OutboxEvent

logger = logging.getLogger(__name__)

BOOKING_CONFIRMED = "booking_confirmed"
SESSION_RESCHEDULED = "session_rescheduled"
RESCHEDULE_REQUESTED = "reschedule_requested"
SESSION_CANCELLED = "session_cancelled"
CREDIT_ISSUED = "credit_issued"


def record_event(db: Session, event_type: str, payload: Optional[dict] = None) -> OutboxEvent:
    """Stage an event; the caller's commit makes it durable"""
    event = OutboxEvent(event_type=event_type, payload=payload or {})
    db.add(event)
    db.flush()
    logger.info(f"📤 Outbox event staged: {event_type} #{event.id}")
    return event


async def enqueue_outbox_events(event_ids: list[int]) -> None:
    """
    Hand staged events to the worker. Runs as a background task after the response;
    anything that fails to enqueue stays pending for the drain cron.
    """
    if not event_ids:
        return
    if not OUTBOX_ENQUEUE_ENABLED:
        logger.debug(f"Outbox enqueue disabled; {len(event_ids)} event(s) left for drain cron")
        return

    from arq import create_pool

    from ..worker import get_redis_settings

    try:
        pool = await create_pool(get_redis_settings())
        try:
            for event_id in event_ids:
                await pool.enqueue_job("dispatch_outbox_event_task", event_id)
                logger.info(f"📋 Outbox event #{event_id} queued")
        finally:
            await pool.close()
    except Exception as e:
        logger.warning(f"⚠️ Failed to queue outbox events {event_ids}: {e}")
