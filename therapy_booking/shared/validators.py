"""Shared validation utilities"""

import re
from datetime import date, datetime
from typing import Optional

_TIME_24H = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::[0-5]\d)?$")
_TIME_12H = re.compile(r"^(0?[1-9]|1[0-2]):([0-5]\d)\s*([AaPp][Mm])$")


def parse_date(value) -> date:
    """
    Parse a YYYY-MM-DD string (or pass through a date).

    Raises:
        ValueError: If the value is not a valid calendar date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError("Date must be in YYYY-MM-DD format")
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError as e:
        raise ValueError("Date must be in YYYY-MM-DD format") from e


def normalize_time_slot(value: str) -> str:
    """
    Normalize a slot time to zero-padded 24h "HH:MM".

    Accepts "9:00", "09:00:00" and "9:00 AM" style input.

    Raises:
        ValueError: If the value is not a recognizable time
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Time must be in HH:MM format")

    raw = value.strip()
    match = _TIME_24H.match(raw)
    if match:
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    match = _TIME_12H.match(raw)
    if match:
        hour = int(match.group(1)) % 12
        if match.group(3).lower() == "pm":
            hour += 12
        return f"{hour:02d}:{match.group(2)}"

    raise ValueError("Time must be in HH:MM format")


def validate_phone(phone: Optional[str]) -> Optional[str]:
    """
    Validate and normalize a phone number to E.164 format.
    Ten-digit numbers are treated as Indian mobile numbers (+91).

    Returns:
        Normalized phone number, or None when the input is empty or invalid
    """
    if not phone:
        return None

    stripped = phone.strip()
    digits = re.sub(r"\D", "", stripped)

    if stripped.startswith("+") and 8 <= len(digits) <= 15:
        return f"+{digits}"
    if len(digits) == 10:
        return f"+91{digits}"
    if len(digits) == 12 and digits.startswith("91"):
        return f"+{digits}"
    return None
