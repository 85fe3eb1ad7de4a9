import os

from celery.schedules import crontab

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as consultations.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "consultations.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie issued by the identity service
    AUTH_COOKIE_NAME = os.getenv("AUTH_COOKIE_NAME", "consult_session")

    # Slot times are seller-local wall clock in this zone
    SCHEDULE_TIMEZONE = os.getenv("SCHEDULE_TIMEZONE", "UTC")

    # Meeting status derivation
    MEETING_GRACE_MINUTES = 15
    STARTING_SOON_MINUTES = 60

    # Slot publishing
    DEFAULT_SLOT_DURATION_MINUTES = int(os.getenv("DEFAULT_SLOT_DURATION_MINUTES", "60"))

    # Cancellation policy (buyer-initiated)
    CANCEL_CUTOFF_HOURS = 12

    # Retention policy
    UNBOOKED_SLOT_RETENTION_DAYS = 0    # past unbooked slots go on the next sweep
    BOOKED_SLOT_RETENTION_DAYS = 20
    BOOKING_RETENTION_DAYS = 90

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_SUCCESS_URL = os.getenv("STRIPE_SUCCESS_URL")
    STRIPE_CANCEL_URL = os.getenv("STRIPE_CANCEL_URL")
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
    CONSULTATION_PRICE = int(os.getenv("CONSULTATION_PRICE", "5000"))  # smallest unit

    # Google Calendar
    GOOGLE_CALENDAR_API = os.getenv("GOOGLE_CALENDAR_API", "https://www.googleapis.com/calendar/v3")
    CALENDAR_HTTP_TIMEOUT_SECONDS = float(os.getenv("CALENDAR_HTTP_TIMEOUT_SECONDS", "10"))

    # Background jobs
    CELERY = {
        "broker_url": os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        "result_backend": os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0"),
        "task_ignore_result": True,
        "task_serializer": "json",
        "accept_content": ["json"],
        "timezone": "UTC",
        "enable_utc": True,
        "task_acks_late": True,
        "beat_schedule": {
            "promote-overdue-bookings": {
                "task": "tasks.sweeps.promote_overdue_bookings",
                "schedule": 5 * 60,
            },
            "retention-sweep": {
                "task": "tasks.sweeps.run_retention_sweep",
                "schedule": crontab(hour=3, minute=0),
            },
        },
    }

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_dummy"
    STRIPE_SUCCESS_URL = "https://example.test/checkout/success"
    STRIPE_CANCEL_URL = "https://example.test/checkout/cancel"
    CELERY = {
        "broker_url": "memory://",
        "result_backend": "cache+memory://",
        "task_always_eager": True,
        "task_ignore_result": True,
    }
