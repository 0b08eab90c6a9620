import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./therapy_booking.db")

# Firebase Configuration
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Frontend base URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Little Care <noreply@littlecare.in>")
EMAIL_REPLY_TO = os.getenv("EMAIL_REPLY_TO")
ADMIN_NOTIFICATION_EMAIL = os.getenv("ADMIN_NOTIFICATION_EMAIL")

# Twilio WhatsApp Configuration
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_WHATSAPP_FROM = os.getenv("TWILIO_WHATSAPP_FROM")  # e.g. whatsapp:+14155238886
WHATSAPP_ENABLED = os.getenv("WHATSAPP_ENABLED", "true").lower() == "true"

# Google Calendar OAuth Configuration
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
# Join link used when a psychologist has no calendar credentials or event creation fails
FALLBACK_MEET_LINK = os.getenv("FALLBACK_MEET_LINK", "https://meet.google.com/new")
CALENDAR_CACHE_TTL = int(os.getenv("CALENDAR_CACHE_TTL", "300"))

# PayU Configuration (hosted checkout + signed callbacks)
# "test" or "production" - default to test for safety
PAYU_ENVIRONMENT = os.getenv("PAYU_ENVIRONMENT", "test")
PAYU_MERCHANT_KEY = os.getenv("PAYU_MERCHANT_KEY")
PAYU_SALT = os.getenv("PAYU_SALT")
PAYU_BASE_URL = os.getenv(
    "PAYU_BASE_URL",
    "https://secure.payu.in" if PAYU_ENVIRONMENT == "production" else "https://test.payu.in",
)
PAYU_SUCCESS_URL = os.getenv("PAYU_SUCCESS_URL", f"{FRONTEND_URL}/api/payment/result")
PAYU_FAILURE_URL = os.getenv("PAYU_FAILURE_URL", f"{FRONTEND_URL}/api/payment/result")

# Transaction lookups for status polling
PAYU_VERIFY_URL = os.getenv(
    "PAYU_VERIFY_URL",
    "https://info.payu.in/merchant/postservice.php?form=2"
    if PAYU_ENVIRONMENT == "production"
    else "https://test.payu.in/merchant/postservice.php?form=2",
)
# Server-to-server payment events are signed with HMAC-SHA256 using this secret
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")

# Timeout for every third-party HTTP call (payment gateway, calendar, messaging)
EXTERNAL_HTTP_TIMEOUT = float(os.getenv("EXTERNAL_HTTP_TIMEOUT", "10.0"))

# Booking rules
BOOKING_TIMEZONE = os.getenv("BOOKING_TIMEZONE", "Asia/Kolkata")
SLOT_HOLD_MINUTES = int(os.getenv("SLOT_HOLD_MINUTES", "5"))
SLOT_HOLD_EXTENSION_MINUTES = int(os.getenv("SLOT_HOLD_EXTENSION_MINUTES", "10"))
SLOT_LOCK_MAX_RETRIES = int(os.getenv("SLOT_LOCK_MAX_RETRIES", "3"))
PAYMENT_STATUS_GRACE_SECONDS = int(os.getenv("PAYMENT_STATUS_GRACE_SECONDS", "30"))
ABANDONED_PAYMENT_MINUTES = int(os.getenv("ABANDONED_PAYMENT_MINUTES", "10"))
SLOT_DURATION_MINUTES = int(os.getenv("SLOT_DURATION_MINUTES", "60"))
SESSION_DURATION_MINUTES = int(os.getenv("SESSION_DURATION_MINUTES", "50"))
RESCHEDULE_CUTOFF_HOURS = int(os.getenv("RESCHEDULE_CUTOFF_HOURS", "24"))
RESCHEDULE_MIN_LEAD_HOURS = int(os.getenv("RESCHEDULE_MIN_LEAD_HOURS", "1"))
# 0 disables the rule; N sends the (N+1)th reschedule of a session to admin approval
RESCHEDULE_APPROVAL_AFTER_COUNT = int(os.getenv("RESCHEDULE_APPROVAL_AFTER_COUNT", "0"))
RECOVERY_LOOKBACK_HOURS = int(os.getenv("RECOVERY_LOOKBACK_HOURS", "24"))
RECOVERY_BATCH_LIMIT = int(os.getenv("RECOVERY_BATCH_LIMIT", "50"))

# Outbox / background notifications
# Set OUTBOX_ENQUEUE_ENABLED=false to leave events for the drain cron only (tests, no Redis)
OUTBOX_ENQUEUE_ENABLED = os.getenv("OUTBOX_ENQUEUE_ENABLED", "true").lower() == "true"
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
