import os
import logging
from typing import List

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


# Emails listed here are always treated as admin, whatever role is stored
ADMIN_EMAILS = _split(os.getenv("ADMIN_EMAILS", ""))
SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@fycs-study-hub.edu")
RECENT_HISTORY_LIMIT = int(os.getenv("RECENT_HISTORY_LIMIT", 10))
# Sessions end after this long without a request, or this long after login
SESSION_IDLE_TIMEOUT = int(os.getenv("SESSION_IDLE_MINUTES", 120)) * 60
SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_HOURS", 24)) * 3600
CORS_ORIGINS = _split(os.getenv("CORS_ORIGINS", "*"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))


def configure_logging(level: str = LOG_LEVEL):
    """Configure the root logger once for the service."""
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s"))
    root.addHandler(handler)
    root.setLevel(level)
