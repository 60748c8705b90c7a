import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("QRATTEND_DB_PATH", BASE_DIR / "database" / "qrattend.db"))
PHOTOS_DIR = Path(os.getenv("QRATTEND_PHOTOS_DIR", BASE_DIR / "assets" / "photos"))
PHOTO_BASE_URL = os.getenv("QRATTEND_PHOTO_BASE_URL", "/photos").strip().rstrip("/") or "/photos"
FRONTEND_URL = os.getenv("QRATTEND_FRONTEND_URL", "http://localhost:5173").strip().rstrip("/")
SIGNING_KEY = os.getenv("QRATTEND_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("QRATTEND_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("QRATTEND_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if not value:
        return fallback
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("QRATTEND_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("QRATTEND_CORS_ALLOW_METHODS"),
    ["GET", "POST", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("QRATTEND_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("QRATTEND_CORS_ALLOW_CREDENTIALS"), True)

# Honour X-Forwarded-For / X-Real-IP only when running behind a trusted proxy.
TRUST_PROXY_HEADERS = _parse_bool(os.getenv("QRATTEND_TRUST_PROXY_HEADERS"), False)

NOTIFY_PARENTS_ON_MARK = _parse_bool(os.getenv("QRATTEND_NOTIFY_PARENTS_ON_MARK"), False)
PHOTO_MAX_BYTES = _parse_int(os.getenv("QRATTEND_PHOTO_MAX_BYTES"), 5 * 1024 * 1024, minimum=1)
PHOTO_JPEG_QUALITY = _parse_int(os.getenv("QRATTEND_PHOTO_JPEG_QUALITY"), 85, minimum=1)

# Outbound email (parent notifications + verification links)
SMTP_HOST = os.getenv("QRATTEND_SMTP_HOST", "").strip()
SMTP_PORT = _parse_int(os.getenv("QRATTEND_SMTP_PORT"), 587, minimum=1)
SMTP_USERNAME = os.getenv("QRATTEND_SMTP_USERNAME", "").strip()
SMTP_PASSWORD = os.getenv("QRATTEND_SMTP_PASSWORD", "").strip()
SMTP_USE_TLS = _parse_bool(os.getenv("QRATTEND_SMTP_USE_TLS"), True)
SMTP_TIMEOUT_SECONDS = _parse_int(os.getenv("QRATTEND_SMTP_TIMEOUT_SECONDS"), 15, minimum=1)
EMAIL_FROM = os.getenv("QRATTEND_EMAIL_FROM", "").strip() or SMTP_USERNAME or "attendance@localhost"
EMAIL_SENDER_NAME = os.getenv("QRATTEND_EMAIL_SENDER_NAME", "Attendance System").strip()
