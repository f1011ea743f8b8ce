"""
Centralized configuration for the post-operative follow-up service.

Values come from the environment (optionally a local .env file).  Module
constants are kept for simple imports; ``load_settings()`` builds a typed
snapshot that the pipeline wiring validates once at startup.
"""

import os

from dotenv import load_dotenv
from pydantic import BaseModel

from postop.gateway.errors import ConfigurationError

load_dotenv()

# --- WhatsApp Cloud API ---
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "")
WHATSAPP_APP_SECRET = os.getenv("WHATSAPP_APP_SECRET", "")
WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN", "")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
WHATSAPP_API_VERSION = os.getenv("WHATSAPP_API_VERSION", "v21.0")

# --- Webhook throttling ---
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

# --- Alerts ---
DOCTOR_PHONE_NUMBER = os.getenv("DOCTOR_PHONE_NUMBER", "")
ALERT_MAX_ATTEMPTS = int(os.getenv("ALERT_MAX_ATTEMPTS", "4"))
ALERT_BACKOFF_SECONDS = float(os.getenv("ALERT_BACKOFF_SECONDS", "1.0"))
ALERT_OUTBOX_INTERVAL_SECONDS = int(os.getenv("ALERT_OUTBOX_INTERVAL_SECONDS", "60"))

# --- Risk classifier (Gemini) ---
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")
CLASSIFIER_MODEL = os.getenv("CLASSIFIER_MODEL", "gemini-2.5-flash")
CLASSIFIER_TIMEOUT_SECONDS = float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", "20"))

# --- Conversation ---
CONVERSATION_TIMEOUT_HOURS = int(os.getenv("CONVERSATION_TIMEOUT_HOURS", "24"))

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))


class Settings(BaseModel):
    """Typed view of the environment used to wire the pipeline."""

    verify_token: str = ""
    app_secret: str = ""
    access_token: str = ""
    phone_number_id: str = ""
    api_version: str = "v21.0"
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: int = 60
    doctor_phone_number: str = ""
    alert_max_attempts: int = 4
    alert_backoff_seconds: float = 1.0
    alert_outbox_interval_seconds: int = 60
    google_api_key: str = ""
    classifier_model: str = "gemini-2.5-flash"
    classifier_timeout_seconds: float = 20.0
    conversation_timeout_hours: int = 24

    def validate_required(self) -> None:
        """Fail fast when webhook credentials are missing.

        An unset secret must never degrade into skipping signature checks,
        so this runs once at startup instead of per request.
        """
        missing = []
        if not self.verify_token:
            missing.append("WHATSAPP_VERIFY_TOKEN")
        if not self.app_secret:
            missing.append("WHATSAPP_APP_SECRET")
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )

    @property
    def classifier_enabled(self) -> bool:
        return bool(self.google_api_key)

    @property
    def messenger_enabled(self) -> bool:
        return bool(self.access_token and self.phone_number_id)


def load_settings() -> Settings:
    return Settings(
        verify_token=WHATSAPP_VERIFY_TOKEN,
        app_secret=WHATSAPP_APP_SECRET,
        access_token=WHATSAPP_ACCESS_TOKEN,
        phone_number_id=WHATSAPP_PHONE_NUMBER_ID,
        api_version=WHATSAPP_API_VERSION,
        rate_limit_max_requests=RATE_LIMIT_MAX_REQUESTS,
        rate_limit_window_seconds=RATE_LIMIT_WINDOW_SECONDS,
        doctor_phone_number=DOCTOR_PHONE_NUMBER,
        alert_max_attempts=ALERT_MAX_ATTEMPTS,
        alert_backoff_seconds=ALERT_BACKOFF_SECONDS,
        alert_outbox_interval_seconds=ALERT_OUTBOX_INTERVAL_SECONDS,
        google_api_key=GOOGLE_API_KEY,
        classifier_model=CLASSIFIER_MODEL,
        classifier_timeout_seconds=CLASSIFIER_TIMEOUT_SECONDS,
        conversation_timeout_hours=CONVERSATION_TIMEOUT_HOURS,
    )
