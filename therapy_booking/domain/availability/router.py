"""Availability router - FastAPI endpoints for open slots"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import AuthContext, require_psychologist_or_admin
from ...database import get_db
from .schemas import AvailabilityResponse, SetAvailabilityRequest, SetAvailabilityResponse
from .service import AvailabilityService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/availability", tags=["Availability"])


def get_availability_service(db: Session = Depends(get_db)) -> AvailabilityService:
    """Dependency injection for AvailabilityService"""
    return AvailabilityService(db)


@router.get("", response_model=AvailabilityResponse)
async def get_availability(
    psychologistId: int = Query(...),
    date: str = Query(...),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Public: open slots for a psychologist on a date"""
    return await service.get_open_slots(psychologistId, date)


@router.put("", response_model=SetAvailabilityResponse)
async def set_availability(
    data: SetAvailabilityRequest,
    context: AuthContext = Depends(require_psychologist_or_admin),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Replace a date's open slots (psychologist for self, admin for anyone)"""
    return service.set_availability(context, data.psychologistId, data.date, data.slots)
