import logging
import os
from decimal import Decimal, InvalidOperation

DEFAULT_DATABASE_URL = "sqlite:///./budgetwise.db"
DEFAULT_FRONTEND_ORIGIN = "http://localhost:3000"
DEFAULT_ALERT_THRESHOLD = Decimal("80")
DEFAULT_RECURRING_SUFFIX = " (Recurring)"


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_frontend_origin() -> str:
    return os.getenv("FRONTEND_ORIGIN", DEFAULT_FRONTEND_ORIGIN)


def get_default_alert_threshold() -> Decimal:
    raw = os.getenv("DEFAULT_ALERT_THRESHOLD")
    if not raw:
        return DEFAULT_ALERT_THRESHOLD
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        return DEFAULT_ALERT_THRESHOLD
    if value < 0 or value > 100:
        return DEFAULT_ALERT_THRESHOLD
    return value


def get_recurring_suffix() -> str:
    return os.getenv("RECURRING_SUFFIX", DEFAULT_RECURRING_SUFFIX)


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
