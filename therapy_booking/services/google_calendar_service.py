"""
Google Calendar Service
Creates Meet-enabled session events and reads busy periods for availability sync.
Every call degrades instead of raising: a booking never fails because Google did.
"""

import base64
import hashlib
import json
import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import httpx
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from ..cache import cache, calendar_busy_key
from ..config import (
    BOOKING_TIMEZONE,
    CALENDAR_CACHE_TTL,
    EXTERNAL_HTTP_TIMEOUT,
    FALLBACK_MEET_LINK,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    SECRET_KEY,
)
from ..models import Psychologist, utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

cipher_suite = Fernet(base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest()))


def encrypt_credentials(credentials: Dict[str, Any]) -> str:
    """Encrypt an OAuth credential dict for storage on the psychologist row"""
    return cipher_suite.encrypt(json.dumps(credentials).encode()).decode()


def decrypt_credentials(blob: Optional[str]) -> Optional[Dict[str, Any]]:
    if not blob:
        return None
    try:
        return json.loads(cipher_suite.decrypt(blob.encode()).decode())
    except (InvalidToken, ValueError) as e:
        logger.error(f"❌ Could not decrypt calendar credentials: {e}")
        return None


def fallback_meeting(reason: str) -> Dict[str, Any]:
    logger.info(f"ℹ️ Using fallback meet link ({reason})")
    return {"event_id": None, "meet_link": FALLBACK_MEET_LINK, "event_link": None, "fallback": True}


async def get_valid_access_token(psychologist: Psychologist, db: Session) -> Optional[str]:
    """
    Get a valid access token, refreshing if necessary
    Returns None if credentials are missing or refresh fails
    """
    credentials = decrypt_credentials(psychologist.google_calendar_credentials)
    if not credentials:
        return None

    try:
        expires_at = credentials.get("expires_at")
        expired = (
            not expires_at
            or datetime.fromisoformat(expires_at) <= utcnow() + timedelta(minutes=5)
        )
        if not expired and credentials.get("access_token"):
            return credentials["access_token"]

        refresh_token = credentials.get("refresh_token")
        if not refresh_token:
            logger.error(f"❌ No refresh token for psychologist {psychologist.id}")
            return None

        logger.info(f"🔄 Refreshing Google token for psychologist {psychologist.id}")
        async with httpx.AsyncClient(timeout=EXTERNAL_HTTP_TIMEOUT) as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": GOOGLE_CLIENT_ID,
                    "client_secret": GOOGLE_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )

        if response.status_code != 200:
            logger.error(f"❌ Token refresh failed: {response.text}")
            return None

        tokens = response.json()
        access_token = tokens.get("access_token")
        if not access_token:
            logger.error("❌ No access token in refresh response")
            return None

        credentials["access_token"] = access_token
        credentials["expires_at"] = (
            utcnow() + timedelta(seconds=tokens.get("expires_in", 3600))
        ).isoformat()
        psychologist.google_calendar_credentials = encrypt_credentials(credentials)
        db.commit()

        logger.info("✅ Google Calendar token refreshed successfully")
        return access_token

    except Exception as e:
        logger.error(f"❌ Error getting valid access token: {str(e)}")
        return None


async def create_meet_event(
    psychologist: Psychologist,
    db: Session,
    summary: str,
    description: str,
    start: datetime,
    end: datetime,
    attendees: list[str],
) -> Dict[str, Any]:
    """
    Create a calendar event with a Google Meet conference.

    Returns:
        {"event_id", "meet_link", "event_link", "fallback"}; the fallback link is used
        when the psychologist has no credentials or the API call fails
    """
    access_token = await get_valid_access_token(psychologist, db)
    if not access_token:
        return fallback_meeting(f"no calendar access for psychologist {psychologist.id}")

    event_data = {
        "summary": summary,
        "description": description,
        "start": {"dateTime": start.isoformat(), "timeZone": BOOKING_TIMEZONE},
        "end": {"dateTime": end.isoformat(), "timeZone": BOOKING_TIMEZONE},
        "attendees": [{"email": email} for email in attendees if email],
        "conferenceData": {
            "createRequest": {
                "requestId": uuid.uuid4().hex,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        },
    }

    try:
        calendar_id = psychologist.google_calendar_id or "primary"
        async with httpx.AsyncClient(timeout=EXTERNAL_HTTP_TIMEOUT) as client:
            response = await client.post(
                f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events",
                params={"conferenceDataVersion": 1, "sendUpdates": "all"},
                headers={"Authorization": f"Bearer {access_token}"},
                json=event_data,
            )

        if response.status_code not in (200, 201):
            logger.error(f"❌ Failed to create calendar event: {response.text}")
            return fallback_meeting("calendar API error")

        event = response.json()
        meet_link = event.get("hangoutLink")
        if not meet_link:
            for entry in (event.get("conferenceData") or {}).get("entryPoints", []):
                if entry.get("entryPointType") == "video":
                    meet_link = entry.get("uri")
                    break

        logger.info(f"✅ Google Calendar event created: {event.get('id')}")
        return {
            "event_id": event.get("id"),
            "meet_link": meet_link or FALLBACK_MEET_LINK,
            "event_link": event.get("htmlLink"),
            "fallback": meet_link is None,
        }

    except Exception as e:
        logger.error(f"❌ Error creating calendar event: {str(e)}")
        return fallback_meeting("calendar request failed")


async def delete_calendar_event(psychologist: Psychologist, db: Session, event_id: str) -> bool:
    """
    Delete a Google Calendar event
    Returns True if successful, False otherwise
    """
    access_token = await get_valid_access_token(psychologist, db)
    if not access_token:
        return False

    try:
        calendar_id = psychologist.google_calendar_id or "primary"
        async with httpx.AsyncClient(timeout=EXTERNAL_HTTP_TIMEOUT) as client:
            response = await client.delete(
                f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events/{event_id}",
                headers={"Authorization": f"Bearer {access_token}"},
            )

        if response.status_code not in (200, 204, 410):
            logger.error(f"❌ Failed to delete calendar event: {response.text}")
            return False

        logger.info(f"✅ Google Calendar event deleted: {event_id}")
        return True

    except Exception as e:
        logger.error(f"❌ Error deleting calendar event: {str(e)}")
        return False


def _event_bounds(event: dict) -> Optional[tuple[str, str]]:
    start = event.get("start") or {}
    end = event.get("end") or {}
    if start.get("dateTime") and end.get("dateTime"):
        return start["dateTime"], end["dateTime"]
    if start.get("date") and end.get("date"):
        # All-day event: blocks the whole day in the booking timezone
        return f"{start['date']}T00:00:00", f"{end['date']}T00:00:00"
    return None


async def list_busy_events(
    psychologist: Psychologist, db: Session, day: date
) -> Optional[list[Dict[str, str]]]:
    """
    Fetch the events on a psychologist's calendar for one day.

    Returns:
        [{"summary", "start", "end"}] with ISO timestamps, or None when the calendar
        could not be read (caller should fall back to unfiltered availability)
    """
    key = calendar_busy_key(psychologist.id, day.isoformat())
    cached = cache.get(key)
    if cached is not None:
        return cached

    access_token = await get_valid_access_token(psychologist, db)
    if not access_token:
        return None

    tz = ZoneInfo(BOOKING_TIMEZONE)
    time_min = datetime.combine(day, datetime.min.time(), tzinfo=tz)
    time_max = time_min + timedelta(days=1)

    try:
        calendar_id = psychologist.google_calendar_id or "primary"
        async with httpx.AsyncClient(timeout=EXTERNAL_HTTP_TIMEOUT) as client:
            response = await client.get(
                f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events",
                headers={"Authorization": f"Bearer {access_token}"},
                params={
                    "timeMin": time_min.isoformat(),
                    "timeMax": time_max.isoformat(),
                    "singleEvents": "true",
                    "orderBy": "startTime",
                    "timeZone": BOOKING_TIMEZONE,
                },
            )

        if response.status_code != 200:
            logger.error(f"❌ Failed to list calendar events: {response.text}")
            return None

        events = []
        for item in response.json().get("items", []):
            if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
                continue
            bounds = _event_bounds(item)
            if bounds:
                events.append({"summary": item.get("summary") or "", "start": bounds[0], "end": bounds[1]})

        cache.set(key, events, ttl=CALENDAR_CACHE_TTL)
        logger.info(f"📅 Fetched {len(events)} calendar events for psychologist {psychologist.id} on {day}")
        return events

    except Exception as e:
        logger.error(f"❌ Error listing calendar events: {str(e)}")
        return None
