import os
from datetime import timezone
from zoneinfo import ZoneInfo

from .utils import app_dir


COMPANY = {
    "name": os.getenv("COMPANY_NAME", "Retail Store"),
    "footer": "Thank you for your business!",
}


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def mongo_uri() -> str:
    return _env("MONGODB_URI")


def db_name() -> str:
    return _env("MONGODB_DB_NAME", "pos_admin") or "pos_admin"


def public_base_url() -> str:
    return _env("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")


def whatsapp_api_base_url() -> str:
    return _env("WHATSAPP_API_BASE_URL", "https://wa.medblisss.com").rstrip("/")


def whatsapp_token_path() -> str:
    return _env("WHATSAPP_TOKEN_PATH", "config/whatsapp/token")


def whatsapp_country_code() -> str:
    return _env("WHATSAPP_COUNTRY_CODE", "91")


def whatsapp_timeout():
    # Unset means no client-side timeout; the network stack decides.
    raw = _env("WHATSAPP_TIMEOUT")
    if not raw:
        return None
    try:
        return max(1.0, float(raw))
    except ValueError:
        return None


def letterhead_source() -> str:
    return _env("LETTERHEAD_SOURCE", os.path.join(app_dir(), "assets", "letterhead.png"))


def low_stock_threshold() -> int:
    try:
        return int(_env("LOW_STOCK_THRESHOLD", "5"))
    except ValueError:
        return 5


def report_timezone():
    name = _env("REPORT_TIMEZONE", "UTC") or "UTC"
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)
