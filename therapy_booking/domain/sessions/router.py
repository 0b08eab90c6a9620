"""Session router - FastAPI endpoints for booked sessions"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from ...auth import AuthContext, get_auth_context, require_client
from ...database import get_db
from ...services.outbox import enqueue_outbox_events
from .schemas import (
    BookRemainingRequest,
    BookWithCreditRequest,
    ClientPackageResponse,
    RescheduleRequest,
    SessionResponse,
    to_client_package_response,
    to_session_response,
)
from .service import SessionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Sessions"])


def get_session_service(db: Session = Depends(get_db)) -> SessionService:
    """Dependency injection for SessionService"""
    return SessionService(db)


# ============================================================================
# SESSIONS
# ============================================================================


@router.get("/sessions", response_model=list[SessionResponse])
async def list_sessions(
    context: AuthContext = Depends(get_auth_context),
    service: SessionService = Depends(get_session_service),
):
    """Client: own sessions. Psychologist: own calendar."""
    return [to_session_response(s) for s in service.list_sessions(context)]


@router.post("/sessions/book-with-credit", response_model=SessionResponse)
async def book_with_credit(
    data: BookWithCreditRequest,
    background_tasks: BackgroundTasks,
    context: AuthContext = Depends(require_client),
    service: SessionService = Depends(get_session_service),
):
    session, event_ids = service.book_with_credit(
        context, data.transactionId, data.psychologistId, data.date, data.time
    )
    background_tasks.add_task(enqueue_outbox_events, event_ids)
    return to_session_response(session)


@router.post("/sessions/book-remaining", response_model=SessionResponse)
async def book_remaining_session(
    data: BookRemainingRequest,
    background_tasks: BackgroundTasks,
    context: AuthContext = Depends(require_client),
    service: SessionService = Depends(get_session_service),
):
    session, event_ids = service.book_remaining(context, data.clientPackageId, data.date, data.time)
    background_tasks.add_task(enqueue_outbox_events, event_ids)
    return to_session_response(session)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: int,
    context: AuthContext = Depends(get_auth_context),
    service: SessionService = Depends(get_session_service),
):
    return to_session_response(service.get_session(context, session_id))


@router.post("/sessions/{session_id}/reschedule", response_model=SessionResponse)
async def reschedule_session(
    session_id: int,
    data: RescheduleRequest,
    background_tasks: BackgroundTasks,
    context: AuthContext = Depends(get_auth_context),
    service: SessionService = Depends(get_session_service),
):
    """Move a session; inside the cutoff window the move waits for admin approval"""
    session, event_ids = service.reschedule(context, session_id, data.date, data.time)
    background_tasks.add_task(enqueue_outbox_events, event_ids)
    return to_session_response(session)


@router.post("/sessions/{session_id}/cancel", response_model=SessionResponse)
async def cancel_session(
    session_id: int,
    background_tasks: BackgroundTasks,
    context: AuthContext = Depends(get_auth_context),
    service: SessionService = Depends(get_session_service),
):
    session, event_ids = service.cancel(context, session_id)
    background_tasks.add_task(enqueue_outbox_events, event_ids)
    return to_session_response(session)


# ============================================================================
# PACKAGES
# ============================================================================


@router.get("/client-packages", response_model=list[ClientPackageResponse])
async def list_client_packages(
    context: AuthContext = Depends(require_client),
    service: SessionService = Depends(get_session_service),
):
    return [to_client_package_response(cp) for cp in service.list_client_packages(context)]
