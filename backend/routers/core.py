from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from backend.config import (
    FRONTEND_URL,
    NOTIFY_PARENTS_ON_MARK,
    PHOTO_MAX_BYTES,
    TRUST_PROXY_HEADERS,
)
from backend.services.mailer import email_configured
from backend.services.photos import photo_path

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/attendance")
def attendance_config():
    return {
        "frontend_url": FRONTEND_URL,
        "network_policy": "student_verified_subnet",
        "subnet_prefix_length": 24,
        "trust_proxy_headers": TRUST_PROXY_HEADERS,
        "notify_parents_on_mark": NOTIFY_PARENTS_ON_MARK,
        "photo_max_bytes": PHOTO_MAX_BYTES,
        "email_enabled": email_configured(),
    }


@router.get("/photos/{filename}")
def get_photo(filename: str):
    path = photo_path(filename)
    if path is None:
        raise HTTPException(status_code=404, detail="Photo not found.")
    return FileResponse(path, media_type="image/jpeg")
