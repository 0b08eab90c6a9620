"""Session domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ...models import ClientPackage, TherapySession
from ...shared.validators import normalize_time_slot, parse_date


class SlotRequestMixin(BaseModel):
    """Shared date/time validation for requests that target a slot"""

    date: str
    time: str

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        return parse_date(v).isoformat()

    @field_validator("time")
    @classmethod
    def validate_time(cls, v):
        return normalize_time_slot(v)


class RescheduleRequest(SlotRequestMixin):
    """Schema for moving a session to a new slot"""

    pass


class BookWithCreditRequest(SlotRequestMixin):
    """Schema for applying a captured-payment credit to a slot"""

    transactionId: str
    psychologistId: int


class BookRemainingRequest(SlotRequestMixin):
    """Schema for booking one of a package's remaining sessions"""

    clientPackageId: int


class SessionResponse(BaseModel):
    """Schema for session response"""

    id: int
    psychologistId: int
    psychologistName: Optional[str] = None
    clientId: int
    clientName: Optional[str] = None
    date: str
    time: str
    status: str
    sessionType: str
    price: float
    packageId: Optional[int] = None
    clientPackageId: Optional[int] = None
    rescheduleCount: int = 0
    requestedDate: Optional[str] = None
    requestedTime: Optional[str] = None
    meetLink: Optional[str] = None
    calendarLink: Optional[str] = None


class ClientPackageResponse(BaseModel):
    id: int
    packageId: int
    packageName: Optional[str] = None
    psychologistId: int
    totalSessions: int
    remainingSessions: int
    consumedSessions: int
    status: str
    purchasedAt: Optional[datetime] = None


def to_session_response(session: TherapySession) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        psychologistId=session.psychologist_id,
        psychologistName=session.psychologist.full_name if session.psychologist else None,
        clientId=session.client_id,
        clientName=session.client.full_name if session.client else None,
        date=session.scheduled_date.isoformat(),
        time=session.scheduled_time,
        status=session.status,
        sessionType=session.session_type,
        price=session.price,
        packageId=session.package_id,
        clientPackageId=session.client_package_id,
        rescheduleCount=session.reschedule_count or 0,
        requestedDate=session.requested_date.isoformat() if session.requested_date else None,
        requestedTime=session.requested_time,
        meetLink=session.google_meet_link,
        calendarLink=session.google_calendar_link,
    )


def to_client_package_response(client_package: ClientPackage) -> ClientPackageResponse:
    return ClientPackageResponse(
        id=client_package.id,
        packageId=client_package.package_id,
        packageName=client_package.package.name if client_package.package else None,
        psychologistId=client_package.psychologist_id,
        totalSessions=client_package.total_sessions,
        remainingSessions=client_package.remaining_sessions,
        consumedSessions=client_package.consumed_sessions,
        status=client_package.status,
        purchasedAt=client_package.purchased_at,
    )
