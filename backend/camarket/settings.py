import os
from decimal import Decimal, InvalidOperation
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def _env_decimal(name: str, default: str) -> Decimal:
    try:
        value = Decimal(os.getenv(name, default))
    except InvalidOperation:
        return Decimal(default)
    if not value.is_finite() or value < 0 or value > 100:
        return Decimal(default)
    return value


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


default_db = str(Path(__file__).resolve().parents[1] / "data" / "camarket.sqlite3")

DB_PATH = os.getenv("CAMARKET_DB_PATH", default_db)
DB_BUSY_TIMEOUT_SECONDS = _env_int("DB_BUSY_TIMEOUT_SECONDS", 30)

ESCROW_HOLD_DAYS = _env_int("ESCROW_HOLD_DAYS", 7)
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "INR").strip().upper() or "INR"
DEFAULT_COMMISSION_PERCENTAGE = _env_decimal("DEFAULT_COMMISSION_PERCENTAGE", "10.00")
EVENT_LOG_SIZE = _env_int("EVENT_LOG_SIZE", 500)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE") or None

TOKEN_TTL_HOURS = _env_int("AUTH_TOKEN_TTL_HOURS", 24)
AUTH_REQUIRED = _env_bool("AUTH_REQUIRED")
AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")
AUTH_LOGIN_PASSWORD = os.getenv("AUTH_LOGIN_PASSWORD", "camarket-demo")
