"""
WhatsApp Messaging Service
Sends booking messages through the Twilio WhatsApp API
"""

import logging
from typing import Optional

import httpx

from ..config import (
    EXTERNAL_HTTP_TIMEOUT,
    TWILIO_ACCOUNT_SID,
    TWILIO_AUTH_TOKEN,
    TWILIO_WHATSAPP_FROM,
    WHATSAPP_ENABLED,
)
from ..shared.validators import validate_phone

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


async def send_whatsapp(to_phone: Optional[str], message_body: str, message_type: str) -> tuple[bool, Optional[str]]:
    """
    Send a WhatsApp message

    Args:
        to_phone: Recipient phone number (any format validate_phone accepts)
        message_body: Message content
        message_type: Type of message, for logging (booking_confirmed, session_cancelled, ...)

    Returns:
        Tuple of (success: bool, error_or_skip_reason: Optional[str])
    """
    if not WHATSAPP_ENABLED:
        logger.debug("WhatsApp disabled")
        return False, "WhatsApp disabled"

    if not (TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_WHATSAPP_FROM):
        logger.debug("Twilio WhatsApp not configured")
        return False, "WhatsApp not configured"

    formatted_phone = validate_phone(to_phone)
    if not formatted_phone:
        logger.warning(f"⚠️ Invalid phone number for WhatsApp: {to_phone}")
        return False, "Invalid phone number"

    try:
        logger.info(f"📱 Sending WhatsApp: type={message_type}, to={formatted_phone}")
        async with httpx.AsyncClient(timeout=EXTERNAL_HTTP_TIMEOUT) as client:
            response = await client.post(
                TWILIO_MESSAGES_URL.format(sid=TWILIO_ACCOUNT_SID),
                auth=(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN),
                data={
                    "From": TWILIO_WHATSAPP_FROM,
                    "To": f"whatsapp:{formatted_phone}",
                    "Body": message_body,
                },
            )

        if response.status_code in (200, 201):
            logger.info(
                f"✅ WhatsApp sent: {message_type} to {formatted_phone} (SID: {response.json().get('sid')})"
            )
            return True, None

        error_data = response.json()
        error_message = error_data.get("message", "Unknown error")
        logger.error(f"❌ Twilio API error [{error_data.get('code')}]: {error_message}")
        return False, error_message

    except httpx.HTTPError as e:
        logger.error(f"❌ Twilio API error: {str(e)}")
        return False, str(e)
