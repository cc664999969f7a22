import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets (also signs booking drafts)
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to app.py as bookings.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "bookings.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Booking lifecycle
    DRAFT_TTL_SECONDS = int(os.getenv("DRAFT_TTL_SECONDS", "3600"))
    PENDING_BOOKING_TTL_SECONDS = int(os.getenv("PENDING_BOOKING_TTL_SECONDS", "1800"))   # 30 minutes
    MAX_PAYMENT_ATTEMPTS = int(os.getenv("MAX_PAYMENT_ATTEMPTS", "3"))
    MAX_RECOVERY_ATTEMPTS = int(os.getenv("MAX_RECOVERY_ATTEMPTS", "3"))

    # Refund policy: client cancelling inside the notice window gets a partial refund
    REFUND_FULL_NOTICE_HOURS = int(os.getenv("REFUND_FULL_NOTICE_HOURS", "24"))
    LATE_CANCEL_REFUND_PERCENT = int(os.getenv("LATE_CANCEL_REFUND_PERCENT", "50"))

    # Webhooks
    WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))        # 5 minutes
    WEBHOOK_BUFFER_TTL_SECONDS = int(os.getenv("WEBHOOK_BUFFER_TTL_SECONDS", "900"))      # 15 minutes
    WEBHOOK_EVENT_RETENTION_HOURS = int(os.getenv("WEBHOOK_EVENT_RETENTION_HOURS", "72"))

    # Calendly
    CALENDLY_ACCESS_TOKEN = os.getenv("CALENDLY_ACCESS_TOKEN")
    CALENDLY_WEBHOOK_SIGNING_KEY = os.getenv("CALENDLY_WEBHOOK_SIGNING_KEY")
    CALENDLY_BASE_URL = os.getenv("CALENDLY_BASE_URL", "https://api.calendly.com")
    SCHEDULING_TIMEOUT_SECONDS = float(os.getenv("SCHEDULING_TIMEOUT_SECONDS", "10"))

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_SUCCESS_URL = os.getenv("STRIPE_SUCCESS_URL", "http://localhost:5002/pay/success")
    STRIPE_CANCEL_URL = os.getenv("STRIPE_CANCEL_URL", "http://localhost:5002/pay/cancel")
    PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))

    # Adapter retry (bounded exponential backoff)
    PROVIDER_RETRY_ATTEMPTS = int(os.getenv("PROVIDER_RETRY_ATTEMPTS", "3"))
    PROVIDER_RETRY_BASE_DELAY = float(os.getenv("PROVIDER_RETRY_BASE_DELAY", "0.5"))

    # Basic app settings
    DEBUG = False


def validate_config(config) -> None:
    percent = config["LATE_CANCEL_REFUND_PERCENT"]
    if not 1 <= percent <= 100:
        raise ValueError("LATE_CANCEL_REFUND_PERCENT must be between 1 and 100")
    if config["MAX_PAYMENT_ATTEMPTS"] < 1 or config["MAX_RECOVERY_ATTEMPTS"] < 1:
        raise ValueError("Attempt limits must be at least 1")
    if config["SCHEDULING_TIMEOUT_SECONDS"] > 10 or config["PAYMENT_TIMEOUT_SECONDS"] > 10:
        raise ValueError("Provider timeouts must not exceed 10 seconds")
