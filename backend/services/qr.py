import base64
import io
import logging

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from backend.config import FRONTEND_URL

logger = logging.getLogger(__name__)


class QrRenderError(RuntimeError):
    pass


def attendance_url(session_id: int) -> str:
    return f"{FRONTEND_URL}/mark-attendance/{session_id}"


def render_qr_data_uri(url: str) -> str:
    """Render `url` as a PNG QR code and return it as a data URI."""
    try:
        qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=10, border=4)
        qr.add_data(url)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
    except Exception as e:
        logger.error("QR render failed for %s: %s", url, e)
        raise QrRenderError(f"Could not render QR code: {e}") from e

    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def render_session_qr(session_id: int) -> str:
    return render_qr_data_uri(attendance_url(session_id))
