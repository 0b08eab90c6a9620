"""
Transactional email for booking notifications.
Templates are MJML, compiled to HTML and sent through Resend.
"""

import logging
from typing import Optional

import resend
from mjml import mjml_to_html

from .config import EMAIL_FROM_ADDRESS, EMAIL_REPLY_TO, RESEND_API_KEY

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY


def compile_mjml_to_html(mjml_content: str) -> str:
    result = mjml_to_html(mjml_content)
    if isinstance(result, dict):
        if result.get("errors"):
            logger.warning(f"⚠️ MJML warnings: {result['errors']}")
        return result.get("html", "")
    html = getattr(result, "html", None)
    return html if html is not None else str(result)


def build_message(to: str, subject: str, html: str, tag: Optional[str] = None) -> dict:
    """Resend payload for a single recipient; the tag names the notification it belongs to."""
    message = {
        "from": EMAIL_FROM_ADDRESS,
        "to": [to],
        "subject": subject,
        "html": html,
    }
    if EMAIL_REPLY_TO:
        message["reply_to"] = EMAIL_REPLY_TO
    if tag:
        message["tags"] = [{"name": "notification", "value": tag}]
    return message


async def send_email(to: str, subject: str, mjml_content: str, tag: Optional[str] = None) -> dict:
    """
    Send one notification email.

    Raises when Resend is not configured or rejects the message so the caller
    can record the failure against the notification result.
    """
    if not RESEND_API_KEY:
        raise Exception("Email service not configured")

    try:
        html = compile_mjml_to_html(mjml_content)
    except Exception as e:
        logger.error(f"❌ MJML compilation failed for {tag or subject}: {e}")
        raise Exception(f"Failed to render email: {e}") from e

    try:
        response = resend.Emails.send(build_message(to, subject, html, tag))
    except Exception as e:
        logger.error(f"❌ Resend rejected {tag or subject} for {to}: {e}")
        raise Exception(f"Failed to send email: {e}") from e

    logger.info(f"📧 Sent {tag or subject} to {to}")
    return response
