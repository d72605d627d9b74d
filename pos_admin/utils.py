import os
import sys
from datetime import datetime, timezone


def app_dir():
    """
    Returns base directory of app
    Works for:
    - normal python run
    - APP_BASE_DIR override (deployments)
    """
    env_base = os.getenv("APP_BASE_DIR", "").strip()
    if env_base:
        os.makedirs(env_base, exist_ok=True)
        return env_base

    if getattr(sys, "frozen", False):
        return os.path.dirname(sys.executable)

    return os.path.dirname(os.path.abspath(__file__))


def safe_float(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def now_iso(moment=None):
    """UTC ISO-8601 timestamp with millisecond precision and a Z suffix."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def parse_iso(value):
    """Parse an ISO-8601 string; returns None when it is missing or invalid."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def normalize_name(name):
    return str(name or "").strip().lower()
