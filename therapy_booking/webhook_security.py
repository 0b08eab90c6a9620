"""
Payment Signature Security Module

Centralized signature handling for everything the payment gateway sends us:
- Salted SHA512 hashes on hosted-checkout parameters and browser callbacks
- HMAC-SHA256 signatures on server-to-server payment events
- Constant-time comparison and timestamp validation

Verification is never optional: a missing secret rejects the request.
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300

# Gateway-mandated field order for the checkout hash
PAYMENT_HASH_SEQUENCE = (
    "key",
    "txnid",
    "amount",
    "productinfo",
    "firstname",
    "email",
    "udf1",
    "udf2",
    "udf3",
    "udf4",
    "udf5",
    "udf6",
    "udf7",
    "udf8",
    "udf9",
    "udf10",
)


class WebhookSignatureError(Exception):
    """Raised when a payment signature or hash does not verify"""

    pass


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def compute_payment_hash(params: dict, salt: str) -> str:
    """
    SHA512 over the fixed field sequence joined by "|", followed by the salt.
    Missing fields contribute an empty string.
    """
    hash_string = "".join(f"{params.get(field) or ''}|" for field in PAYMENT_HASH_SEQUENCE)
    hash_string += salt
    return hashlib.sha512(hash_string.encode("utf-8")).hexdigest()


def verify_payment_hash(params: dict, salt: Optional[str]) -> None:
    """
    Validate the hash echoed back by the gateway on a browser callback.

    Raises:
        WebhookSignatureError: If the salt is missing, the hash is absent or it does not match
    """
    if not salt:
        raise WebhookSignatureError("Payment salt not configured")

    received_hash = str(params.get("hash") or "")
    if not received_hash:
        raise WebhookSignatureError("Missing payment hash")

    expected_hash = compute_payment_hash(params, salt)
    if not constant_time_compare(expected_hash, received_hash.lower()):
        logger.warning(f"🚫 Payment hash mismatch for txnid={params.get('txnid')}")
        raise WebhookSignatureError("Payment hash mismatch")


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS) -> bool:
    """
    Verify webhook timestamp is within acceptable range.
    Prevents replay attacks by rejecting old webhooks.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds

    Returns:
        True if timestamp is valid, False otherwise
    """
    if not timestamp:
        return True  # Timestamp header is optional

    try:
        webhook_time = int(timestamp)
        age = abs(int(time.time()) - webhook_time)

        if age > max_age:
            logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
            return False

        return True
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False


async def verify_payment_webhook(
    request: Request, secret: Optional[str], raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify a server-to-server payment event.

    The gateway sends:
    - Header: 'X-Webhook-Signature' (hex HMAC-SHA256 of the raw body)
    - Header: 'X-Webhook-Timestamp' (optional unix timestamp, replay guard)

    Args:
        request: FastAPI request object
        secret: Webhook secret from the gateway dashboard
        raise_on_failure: If True, raises HTTPException on failure

    Returns:
        Tuple of (is_valid, raw_body)
    """
    # Get raw body BEFORE any parsing - the signature covers exact bytes
    raw_body = await request.body()
    signature_header = request.headers.get("X-Webhook-Signature", "")
    timestamp = request.headers.get("X-Webhook-Timestamp")

    logger.info(f"📥 Payment webhook received ({len(raw_body)} bytes)")

    if not secret:
        logger.error("❌ PAYMENT_WEBHOOK_SECRET not configured - rejecting webhook")
        if raise_on_failure:
            raise HTTPException(status_code=503, detail="Webhook verification not configured")
        return False, raw_body

    if not signature_header:
        logger.warning("🚫 Payment webhook missing signature header")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        return False, raw_body

    if not verify_timestamp(timestamp):
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Webhook timestamp expired")
        return False, raw_body

    expected_signature = compute_hmac_sha256(secret, raw_body)
    if not constant_time_compare(expected_signature, signature_header.strip().lower()):
        logger.warning("🚫 Payment webhook signature mismatch")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        return False, raw_body

    logger.debug("✅ Payment webhook signature verified")
    return True, raw_body


def create_webhook_signature(secret: str, payload: bytes) -> str:
    """Create a webhook signature for testing or outgoing webhooks"""
    return compute_hmac_sha256(secret, payload)
