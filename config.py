import logging
import os

from dotenv import load_dotenv

load_dotenv()


class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (celery broker) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- OpenAI / LLM ---
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4.1-mini")
    OPENAI_TIMEOUT = int(os.environ.get("OPENAI_TIMEOUT", "30"))

    # --- Telnyx (SMS) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_PUBLIC_KEY = os.environ.get("TELNYX_PUBLIC_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER")
    SMS_SEND_TIMEOUT = float(os.environ.get("SMS_SEND_TIMEOUT", "10"))

    # --- Time resolution ---
    # Zone used when a user has none or an unknown one.
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "UTC")
    # Bare "at H" with H below this limit is read as PM.
    PM_INFERENCE_HOUR_LIMIT = int(os.environ.get("PM_INFERENCE_HOUR_LIMIT", "7"))
    DEFAULT_REMINDER_OFFSET = int(os.environ.get("DEFAULT_REMINDER_OFFSET", "0"))

    # --- Reminder sweep ---
    REMINDER_SWEEP_INTERVAL = float(os.environ.get("REMINDER_SWEEP_INTERVAL", "60"))
    SWEEP_BATCH_LIMIT = int(os.environ.get("SWEEP_BATCH_LIMIT", "500"))

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
