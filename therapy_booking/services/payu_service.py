"""PayU service - hosted checkout signing and transaction lookups"""

import hashlib
import logging
import secrets
import string
import time
from typing import Optional

import httpx

from ..config import (
    EXTERNAL_HTTP_TIMEOUT,
    PAYU_BASE_URL,
    PAYU_ENVIRONMENT,
    PAYU_FAILURE_URL,
    PAYU_MERCHANT_KEY,
    PAYU_SALT,
    PAYU_SUCCESS_URL,
    PAYU_VERIFY_URL,
)
from ..webhook_security import compute_payment_hash, verify_payment_hash

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase

# Gateway transaction states collapsed to what reconciliation needs
GATEWAY_CAPTURED = "captured"
GATEWAY_FAILED = "failed"
GATEWAY_PENDING = "pending"


def generate_transaction_id() -> str:
    """TXN_<epoch ms>_<9 random base36 chars>"""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"TXN_{int(time.time() * 1000)}_{suffix}"


def format_amount(amount: float) -> str:
    return f"{amount:.2f}"


class PayUService:
    """Service for PayU checkout and verification operations"""

    def __init__(self):
        self.merchant_key = PAYU_MERCHANT_KEY
        self.salt = PAYU_SALT
        self.base_url = PAYU_BASE_URL
        self.verify_url = PAYU_VERIFY_URL

        if not self.merchant_key or not self.salt:
            logger.warning("PAYU_MERCHANT_KEY/PAYU_SALT not set; checkout will fail until configured")
        else:
            logger.info(f"PayU configured (env={PAYU_ENVIRONMENT})")

    def is_available(self) -> bool:
        """Check if PayU credentials are configured"""
        return bool(self.merchant_key and self.salt)

    @property
    def payment_url(self) -> str:
        return f"{self.base_url}/_payment"

    def build_checkout_params(
        self,
        transaction_id: str,
        amount: float,
        product_info: str,
        first_name: str,
        email: str,
        phone: Optional[str],
        scheduled_date: str,
        psychologist_id: int,
        client_id: int,
        package_id: Optional[int],
        scheduled_time: str,
    ) -> dict:
        """
        Build the signed form parameters posted to the hosted checkout page.
        Booking details ride along in udf1-udf5 and come back on the callback.
        """
        params = {
            "key": self.merchant_key,
            "txnid": transaction_id,
            "amount": format_amount(amount),
            "productinfo": product_info,
            "firstname": first_name,
            "email": email or "",
            "phone": phone or "",
            "surl": PAYU_SUCCESS_URL,
            "furl": PAYU_FAILURE_URL,
            "udf1": scheduled_date,
            "udf2": str(psychologist_id),
            "udf3": str(client_id),
            "udf4": str(package_id) if package_id else "individual",
            "udf5": scheduled_time,
        }
        params["hash"] = compute_payment_hash(params, self.salt)
        return params

    def validate_callback(self, params: dict) -> None:
        """Raises WebhookSignatureError when the echoed hash does not match"""
        verify_payment_hash(params, self.salt)

    async def verify_transaction(self, transaction_id: str) -> Optional[dict]:
        """
        Ask the gateway for the current state of a transaction.

        Returns:
            {"status": captured|failed|pending, "gateway_payment_id", "amount"} or None on error
        """
        if not self.is_available():
            logger.warning("⚠️ PayU not configured - skipping transaction lookup")
            return None

        command = "verify_payment"
        hash_value = hashlib.sha512(
            f"{self.merchant_key}|{command}|{transaction_id}|{self.salt}".encode("utf-8")
        ).hexdigest()

        try:
            async with httpx.AsyncClient(timeout=EXTERNAL_HTTP_TIMEOUT) as client:
                response = await client.post(
                    self.verify_url,
                    data={
                        "key": self.merchant_key,
                        "command": command,
                        "var1": transaction_id,
                        "hash": hash_value,
                    },
                )

            if response.status_code != 200:
                logger.error(f"❌ PayU verify failed for {transaction_id}: HTTP {response.status_code}")
                return None

            details = (response.json().get("transaction_details") or {}).get(transaction_id) or {}
            raw_status = str(details.get("status", "")).lower()
            if raw_status == "success":
                status = GATEWAY_CAPTURED
            elif raw_status in ("failure", "failed", "usercancelled", "dropped", "bounced"):
                status = GATEWAY_FAILED
            else:
                status = GATEWAY_PENDING

            amount = details.get("amt") or details.get("transaction_amount")
            logger.info(f"💳 PayU status for {transaction_id}: {raw_status or 'unknown'}")
            return {
                "status": status,
                "gateway_payment_id": details.get("mihpayid"),
                "amount": float(amount) if amount else None,
            }
        except httpx.TimeoutException:
            logger.error(f"❌ PayU verify timed out for {transaction_id}")
            return None
        except Exception as e:
            logger.error(f"❌ PayU verify error for {transaction_id}: {e}")
            return None


payu_service = PayUService()
