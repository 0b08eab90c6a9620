"""Availability domain schemas - Pydantic models for validation"""

from typing import Optional

from pydantic import BaseModel


class AvailabilityResponse(BaseModel):
    """Open slots for one psychologist on one date"""

    psychologistId: int
    date: str
    slots: list[str]
    calendarFiltered: bool = False


class SetAvailabilityRequest(BaseModel):
    """Schema for replacing a date's open slots"""

    psychologistId: Optional[int] = None
    date: str
    slots: list[str]


class SetAvailabilityResponse(BaseModel):
    psychologistId: int
    date: str
    slots: list[str]
    skippedBooked: list[str] = []
