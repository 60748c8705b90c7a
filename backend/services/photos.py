import base64
import binascii
import logging
import uuid
from pathlib import Path

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend import config

logger = logging.getLogger(__name__)


class PhotoInvalidError(ValueError):
    pass


class PhotoUploadError(RuntimeError):
    pass


def decode_photo(photo_data: str) -> np.ndarray:
    """
    Decode a base64 JPEG/PNG (optionally a `data:image/...;base64,` URI)
    into a BGR frame. Raises PhotoInvalidError for anything OpenCV can't read.
    """
    payload = (photo_data or "").strip()
    if payload.startswith("data:"):
        _, _, payload = payload.partition(",")
    if not payload:
        raise PhotoInvalidError("Photo data is empty.")

    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PhotoInvalidError("Photo is not valid base64.") from e

    if len(raw) > config.PHOTO_MAX_BYTES:
        raise PhotoInvalidError("Photo is too large.")

    img_array = np.frombuffer(raw, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        raise PhotoInvalidError("Invalid image data.")
    return frame


def store_photo(photo_data: str) -> str:
    """Validate, re-encode as JPEG, persist under PHOTOS_DIR and return its URL."""
    frame = decode_photo(photo_data)

    ok, encoded = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, config.PHOTO_JPEG_QUALITY])
    if not ok:
        raise PhotoUploadError("Could not encode photo.")

    filename = f"{uuid.uuid4().hex}.jpg"
    try:
        config.PHOTOS_DIR.mkdir(parents=True, exist_ok=True)
        (config.PHOTOS_DIR / filename).write_bytes(encoded.tobytes())
    except OSError as e:
        logger.error("Photo write failed: %s", e)
        raise PhotoUploadError("Error uploading photo.") from e

    return f"{config.PHOTO_BASE_URL}/{filename}"


def photo_path(filename: str) -> Path | None:
    """Resolve a stored photo by name; None for unknown or unsafe names."""
    name = Path(filename).name
    if name != filename or not name.endswith(".jpg"):
        return None
    path = config.PHOTOS_DIR / name
    if not path.is_file():
        return None
    return path


def discard_photo(url: str | None) -> None:
    if not url or not url.startswith(f"{config.PHOTO_BASE_URL}/"):
        return
    path = photo_path(url.rsplit("/", 1)[-1])
    if path is None:
        return
    try:
        path.unlink()
    except OSError as e:
        logger.warning("Could not discard photo %s: %s", path, e)
