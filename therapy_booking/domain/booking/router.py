"""Booking router - FastAPI endpoints for slot reservation and status polling"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from ...auth import AuthContext, get_auth_context, require_client
from ...database import get_db
from ...services.outbox import enqueue_outbox_events
from .schemas import BookingStatusResponse, ReserveSlotRequest, ReserveSlotResponse
from .service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Booking"])


def get_booking_service(db: Session = Depends(get_db)) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db)


@router.post("/reserve-slot", response_model=ReserveSlotResponse)
async def reserve_slot(
    data: ReserveSlotRequest,
    context: AuthContext = Depends(require_client),
    service: BookingService = Depends(get_booking_service),
):
    """Hold a slot for a few minutes and quote its price"""
    return service.reserve_slot(context, data.psychologistId, data.date, data.time, data.packageId)


@router.get("/booking-status/{order_id}", response_model=BookingStatusResponse)
async def get_booking_status(
    order_id: str,
    background_tasks: BackgroundTasks,
    context: AuthContext = Depends(get_auth_context),
    service: BookingService = Depends(get_booking_service),
):
    """Poll a reservation; a stale pending payment is checked with the gateway"""
    payload, event_ids = await service.get_booking_status(context, order_id)
    if event_ids:
        background_tasks.add_task(enqueue_outbox_events, event_ids)
    return payload
