"""Admin router - review of reschedule requests inside the cutoff window"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ...auth import AuthContext, require_admin
from ...database import get_db
from ...services.outbox import enqueue_outbox_events
from ..sessions.schemas import SessionResponse, to_session_response
from ..sessions.service import SessionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


class RejectRescheduleRequest(BaseModel):
    reason: Optional[str] = None


def get_session_service(db: Session = Depends(get_db)) -> SessionService:
    """Dependency injection for SessionService"""
    return SessionService(db)


@router.get("/reschedule-requests", response_model=list[SessionResponse])
async def list_reschedule_requests(
    _: AuthContext = Depends(require_admin),
    service: SessionService = Depends(get_session_service),
):
    return [to_session_response(s) for s in service.list_reschedule_requests()]


@router.post("/reschedule-requests/{session_id}/approve", response_model=SessionResponse)
async def approve_reschedule_request(
    session_id: int,
    background_tasks: BackgroundTasks,
    context: AuthContext = Depends(require_admin),
    service: SessionService = Depends(get_session_service),
):
    """Apply the requested slot through the normal reschedule path"""
    session, event_ids = service.approve_reschedule_request(session_id)
    background_tasks.add_task(enqueue_outbox_events, event_ids)
    logger.info(f"👤 Admin {context.email} approved reschedule for session {session_id}")
    return to_session_response(session)


@router.post("/reschedule-requests/{session_id}/reject", response_model=SessionResponse)
async def reject_reschedule_request(
    session_id: int,
    data: Optional[RejectRescheduleRequest] = None,
    context: AuthContext = Depends(require_admin),
    service: SessionService = Depends(get_session_service),
):
    session = service.reject_reschedule_request(session_id, data.reason if data else None)
    logger.info(f"👤 Admin {context.email} rejected reschedule for session {session_id}")
    return to_session_response(session)
